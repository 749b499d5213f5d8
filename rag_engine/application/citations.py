"""
===============================================================================
CRC CARD: application/citations.py
===============================================================================

Class:
    CitationTracker

Responsibilities:
    - Tag the assembled context with markers [S1]..[Sn] (context order).
    - Validate generated text: keep markers that point into the context,
      strip and report the ones that do not (integrity violations).
    - Synthesize a citation list covering the whole context when the answer
      carries no valid marker.
    - Render answers in the configured citation style.
    - Keep per-conversation citation stats in memory, bounded: the least
      recently updated conversations are evicted past `max_conversations`
      and each keeps its last `max_messages` answers.

Collaborators:
    - domain.entities (AssembledContext, Citation)
    - crosscutting.exceptions.CitationIntegrityViolation (non-fatal record)
    - crosscutting.metrics (violations, synthesized citations)

Invariants:
    - Every returned Citation references a chunk of the given context.
    - Marker-like text inside chunk bodies is escaped, so only the tracker
      produces real markers in the prompt.
===============================================================================
"""

from __future__ import annotations

import re
import threading
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from ..crosscutting.exceptions import CitationIntegrityViolation
from ..crosscutting.logger import logger
from ..crosscutting.metrics import record_citation_violation, record_citations_synthesized
from ..domain.entities import AssembledChunk, AssembledContext, Chunk, Citation

CITATION_STYLES = ("inline", "footnote", "end", "none")

_MARKER_RE = re.compile(r"\[S(\d+)\]")
_MARKER_LIKE_RE = re.compile(r"\[(\s*S\s*\d+\s*)\]", re.IGNORECASE)
_SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([.,;:!?])")
_MULTI_SPACE_RE = re.compile(r"[ \t]{2,}")


def marker_for(position: int) -> str:
    """R: 1-based position -> '[S<n>]'."""
    return f"[S{position}]"


def escape_markers(text: str) -> str:
    """'[S3]' inside source text becomes '(S3)'."""
    return _MARKER_LIKE_RE.sub(lambda m: f"({m.group(1).strip()})", text or "")


def display_label(chunk: Chunk) -> str:
    """R: Title, else host + path of the source URI, else the document id."""
    if chunk.title:
        return chunk.title
    uri = chunk.source_uri or ""
    parsed = urlparse(uri)
    if parsed.netloc:
        return parsed.netloc + (parsed.path or "/")
    return uri or chunk.document_id


@dataclass(frozen=True)
class TaggedSource:
    marker: str
    item: AssembledChunk
    rendered: str

    @property
    def chunk(self) -> Chunk:
        return self.item.chunk


@dataclass(frozen=True)
class TaggedContext:
    sources: Tuple[TaggedSource, ...]
    text: str

    def by_marker(self) -> Dict[str, TaggedSource]:
        return {s.marker: s for s in self.sources}

    @property
    def markers(self) -> Tuple[str, ...]:
        return tuple(s.marker for s in self.sources)


@dataclass
class CitationValidation:
    citations: List[Citation]
    text: str
    violations: List[CitationIntegrityViolation] = field(default_factory=list)

    @property
    def has_citations(self) -> bool:
        return bool(self.citations)


class CitationTracker:
    def __init__(self, *, max_conversations: int = 10_000, max_messages: int = 100) -> None:
        if max_conversations <= 0 or max_messages <= 0:
            raise ValueError("max_conversations and max_messages must be > 0")
        self._max_conversations = max_conversations
        self._max_messages = max_messages
        self._lock = threading.Lock()
        self._history: "OrderedDict[str, Deque[List[Citation]]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Prompt side
    # ------------------------------------------------------------------
    def tag(self, context: AssembledContext) -> TaggedContext:
        sources: List[TaggedSource] = []
        for position, item in enumerate(context.items, start=1):
            marker = marker_for(position)
            chunk = item.chunk
            header = f"{marker} {escape_markers(display_label(chunk))}"
            origin = chunk.source_uri or chunk.document_id
            if origin:
                header += f" | {origin}"
            rendered = f"{header}\n{escape_markers(chunk.text).strip()}\n"
            sources.append(TaggedSource(marker=marker, item=item, rendered=rendered))
        return TaggedContext(
            sources=tuple(sources),
            text="\n".join(s.rendered for s in sources),
        )

    # ------------------------------------------------------------------
    # Answer side
    # ------------------------------------------------------------------
    def validate(
        self, generated_text: str, context: AssembledContext
    ) -> CitationValidation:
        """
        R: Valid citations (deduped, first-appearance order), text with the
        invalid markers removed, and one violation per invalid marker.
        """
        tagged = self.tag(context)
        by_marker = tagged.by_marker()
        citations: List[Citation] = []
        seen: set[str] = set()
        violations: List[CitationIntegrityViolation] = []

        def check(match: re.Match) -> str:
            marker = match.group(0)
            source = by_marker.get(marker)
            if source is None:
                violations.append(
                    CitationIntegrityViolation(
                        f"Marker {marker} does not reference the assembled context",
                        marker=marker,
                    )
                )
                return ""
            if marker not in seen:
                seen.add(marker)
                citations.append(_citation(source))
            return marker

        cleaned = _MARKER_RE.sub(check, generated_text or "")
        if violations:
            cleaned = _tidy(cleaned)
            record_citation_violation(len(violations))
            logger.warning(
                "citation integrity violation",
                extra={
                    "markers": [v.marker for v in violations],
                    "context_size": len(context),
                },
            )
        return CitationValidation(citations=citations, text=cleaned, violations=violations)

    def synthesize(self, context: AssembledContext) -> List[Citation]:
        """R: One citation per context chunk, in context order."""
        citations = [_citation(s) for s in self.tag(context).sources]
        if citations:
            record_citations_synthesized(len(citations))
        return citations

    def format_answer(
        self, text: str, citations: Sequence[Citation], style: str = "inline"
    ) -> str:
        """
        inline   -> markers stay where the model put them
        footnote -> markers become [^n], footnotes appended
        end      -> markers removed, numbered source list appended
        none     -> markers removed
        """
        if style not in CITATION_STYLES:
            raise ValueError(f"style must be one of {CITATION_STYLES}")
        if style == "inline":
            return text

        number = {c.marker: i for i, c in enumerate(citations, start=1)}
        if style == "footnote":
            body = _MARKER_RE.sub(
                lambda m: f"[^{number[m.group(0)]}]" if m.group(0) in number else "",
                text,
            )
            notes = [f"[^{i}]: {c.label} ({c.source_uri})" for i, c in enumerate(citations, 1)]
            return _tidy(body) + ("\n\n" + "\n".join(notes) if notes else "")

        body = _tidy(_MARKER_RE.sub("", text))
        if style == "none" or not citations:
            return body
        lines = [f"{i}. {c.label} - {c.source_uri}" for i, c in enumerate(citations, 1)]
        return body + "\n\nSources:\n" + "\n".join(lines)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def record(self, conversation_id: str, citations: Sequence[Citation]) -> None:
        with self._lock:
            messages = self._history.get(conversation_id)
            if messages is None:
                messages = self._history[conversation_id] = deque(maxlen=self._max_messages)
            else:
                self._history.move_to_end(conversation_id)
            messages.append(list(citations))
            while len(self._history) > self._max_conversations:
                self._history.popitem(last=False)

    def stats(self, conversation_id: str) -> Dict[str, Any]:
        with self._lock:
            messages = list(self._history.get(conversation_id, ()))

        with_citations = [m for m in messages if m]
        total = sum(len(m) for m in with_citations)
        counts: Counter[str] = Counter(
            c.source_uri for m in with_citations for c in m if c.source_uri
        )
        return {
            "total_messages": len(messages),
            "messages_with_citations": len(with_citations),
            "total_citations": total,
            "unique_sources": list(counts),
            "unique_sources_count": len(counts),
            "source_counts": dict(counts),
            "avg_citations_per_message": (
                round(total / len(with_citations), 2) if with_citations else 0.0
            ),
        }

    def most_cited_sources(self, limit: int = 10) -> List[Dict[str, Any]]:
        counts: Counter[str] = Counter()
        titles: Dict[str, Optional[str]] = {}
        with self._lock:
            for messages in self._history.values():
                for citations in messages:
                    for c in citations:
                        if not c.source_uri:
                            continue
                        counts[c.source_uri] += 1
                        titles.setdefault(c.source_uri, c.title)
        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        return [{"source_uri": uri, "title": titles[uri], "count": n} for uri, n in ranked]


def _citation(source: TaggedSource) -> Citation:
    chunk = source.chunk
    return Citation(
        source_uri=chunk.source_uri or chunk.document_id,
        chunk_id=chunk.chunk_id,
        label=display_label(chunk),
        title=chunk.title,
        marker=source.marker,
    )


def _tidy(text: str) -> str:
    text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
    return _MULTI_SPACE_RE.sub(" ", text).strip()
