"""
Prompt Infrastructure (Infrastructure Layer)

Barrel for `infrastructure.prompts`: loads and formats the versioned answer
templates and the grounding policy (.md files with frontmatter).
"""

from .loader import PromptLoader, PromptMetadata, get_prompt_loader, parse_frontmatter

__all__ = ["PromptLoader", "PromptMetadata", "get_prompt_loader", "parse_frontmatter"]
