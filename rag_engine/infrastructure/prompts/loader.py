"""
Name: Prompt Loader (versioned markdown prompts)

Responsibilities:
  - Read the grounding policy (system prompt) and the answer template for a
    given version and language from packaged .md files
  - Split the optional frontmatter header from the prompt body
  - Use v1 when the requested template version is not shipped
  - Render the answer template by substituting {context} and {query}

Collaborators:
  - rag_engine/prompts/{policy,rag_answer}/*.md
  - crosscutting.config.get_settings (prompt_version, prompt_lang)
  - application/orchestrator (through domain.services.PromptRenderer)

Constraints:
  - The version selects a file name, so it must look like v1, v2, ...
  - An answer template must carry both substitution tokens
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from ...crosscutting.logger import logger

PROMPTS_DIR = Path(__file__).resolve().parents[2] / "prompts"

FALLBACK_VERSION = "v1"
REQUIRED_TOKENS = ("{context}", "{query}")

_VERSION_RE = re.compile(r"^v\d+$")
_LANG_RE = re.compile(r"^[a-z]{2}$")
_HEADER_RE = re.compile(r"\A---[ \t]*\n(?P<header>.*?)\n---[ \t]*\n", re.DOTALL)
_SUBSTITUTION_RE = re.compile(r"\{(context|query)\}")


@dataclass
class PromptMetadata:
    type: str = ""
    version: str = ""
    lang: str = ""
    description: str = ""
    inputs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PromptFile:
    path: Path
    metadata: PromptMetadata
    body: str


def parse_frontmatter(content: str) -> tuple[PromptMetadata, str]:
    """
    Split ``content`` into (metadata, body).

    The header is a small YAML subset: ``key: value`` scalars plus a
    dash list under ``inputs``. Unknown keys are ignored.
    """
    match = _HEADER_RE.match(content)
    if match is None:
        return PromptMetadata(), content

    meta = PromptMetadata()
    list_key: Optional[str] = None
    for raw in match.group("header").splitlines():
        text = raw.strip()
        if not text or text.startswith("#"):
            continue
        if text.startswith("- "):
            if list_key == "inputs":
                meta.inputs.append(text[2:].strip())
            continue
        key, sep, value = text.partition(":")
        if not sep:
            continue
        list_key = key.strip()
        value = value.strip().strip("\"'")
        if value and list_key in {"type", "version", "lang", "description"}:
            setattr(meta, list_key, value)
    return meta, content[match.end():]


def read_prompt_file(path: Path) -> PromptFile:
    if not path.is_file():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    metadata, body = parse_frontmatter(path.read_text(encoding="utf-8"))
    return PromptFile(path=path, metadata=metadata, body=body.strip())


class PromptLoader:
    """Policy + answer template for one (version, language) pair, read lazily."""

    def __init__(
        self,
        version: str = FALLBACK_VERSION,
        lang: str = "en",
        *,
        prompts_dir: Path = PROMPTS_DIR,
    ):
        version = (version or "").strip()
        if not _VERSION_RE.match(version):
            raise ValueError(f"Invalid prompt version '{version}'. Expected v1, v2, ...")
        lang = (lang or "").strip().lower()
        if not _LANG_RE.match(lang):
            raise ValueError(f"Invalid prompt language '{lang}'")

        self.version = version
        self.lang = lang
        self._root = Path(prompts_dir)
        self._policy: Optional[PromptFile] = None
        self._template: Optional[PromptFile] = None

    @property
    def metadata(self) -> Optional[PromptMetadata]:
        return self._template.metadata if self._template else None

    def system_prompt(self) -> str:
        if self._policy is None:
            path = self._root / "policy" / f"grounded_contract_{self.lang}.md"
            try:
                self._policy = read_prompt_file(path)
            except FileNotFoundError:
                logger.error("Grounding policy not found", extra={"path": str(path)})
                raise
            logger.info(
                "Loaded grounding policy",
                extra={"version": self._policy.metadata.version, "chars": len(self._policy.body)},
            )
        return self._policy.body

    def get_template(self) -> str:
        if self._template is None:
            template = self._read_template()
            missing = [token for token in REQUIRED_TOKENS if token not in template.body]
            if missing:
                raise ValueError(
                    f"Prompt template missing required tokens: {', '.join(missing)}"
                )
            self._template = template
            logger.info(
                "Loaded prompt template",
                extra={
                    "path": template.path.name,
                    "chars": len(template.body),
                    "declared_inputs": template.metadata.inputs,
                },
            )
        return self._template.body

    def format(self, context: str, query: str) -> str:
        """Substitute both tokens in a single pass; inserted text is never rescanned."""
        template = self.get_template()
        undeclared = set(self._template.metadata.inputs) - {"context", "query"}
        if undeclared:
            logger.warning(
                "Template declares inputs that are never supplied",
                extra={"inputs": sorted(undeclared)},
            )
        values = {"context": context, "query": query}
        return _SUBSTITUTION_RE.sub(lambda m: values[m.group(1)], template)

    def _read_template(self) -> PromptFile:
        folder = self._root / "rag_answer"
        try:
            return read_prompt_file(folder / f"{self.version}_{self.lang}.md")
        except FileNotFoundError:
            if self.version == FALLBACK_VERSION:
                raise
            logger.warning(
                "Prompt template version not shipped, using fallback",
                extra={"requested_version": self.version, "fallback": FALLBACK_VERSION},
            )
            return read_prompt_file(folder / f"{FALLBACK_VERSION}_{self.lang}.md")


@lru_cache
def get_prompt_loader() -> PromptLoader:
    from ...crosscutting.config import get_settings

    settings = get_settings()
    return PromptLoader(version=settings.prompt_version, lang=settings.prompt_lang)
