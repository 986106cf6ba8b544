"""
Prompt Loader — loads the phase prompts from the prompts/ directory.

The wording of the prompts is content, not code: edit the .md files to change
what the advisor asks and how it recommends. The recommendation template
contains three placeholders that are filled per request:

    {project_information}   the gathering-phase summary
    {tool_information}      catalog: tool inventory
    {product_urls}          catalog: product URL lookup
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from toolhire import config

GATHERING_PROMPT_FILE = "gathering_prompt.md"
RECOMMENDATION_PROMPT_FILE = "recommendation_prompt.md"

TEMPLATE_PLACEHOLDERS = ("{project_information}", "{tool_information}", "{product_urls}")


@dataclass
class PromptSet:
    """Both phase prompts, as loaded from disk."""

    gathering_prompt: str
    recommendation_template: str

    def render_recommendation(self, project_information: str, tool_information: str, product_urls: str) -> str:
        # str.replace, not str.format: catalog text may contain braces
        return (
            self.recommendation_template
            .replace("{project_information}", project_information)
            .replace("{tool_information}", tool_information)
            .replace("{product_urls}", product_urls)
        )


# ---------------------------------------------------------------------------
# Module-level cache
# ---------------------------------------------------------------------------
_prompt_cache: dict[str, PromptSet] = {}


def _read_file(path: Path) -> str:
    """Read a text file, returning empty string if it doesn't exist."""
    if path.exists():
        return path.read_text(encoding="utf-8").strip()
    return ""


def load_prompts(prompts_dir: Path | None = None) -> PromptSet:
    """Load the prompt set from a directory. Results are cached per directory."""
    prompts_dir = Path(prompts_dir or config.PROMPTS_DIR)
    cache_key = str(prompts_dir.resolve())
    if cache_key in _prompt_cache:
        return _prompt_cache[cache_key]

    gathering_prompt = _read_file(prompts_dir / GATHERING_PROMPT_FILE)
    recommendation_template = _read_file(prompts_dir / RECOMMENDATION_PROMPT_FILE)

    if not gathering_prompt:
        raise ValueError(f"Gathering prompt not found or empty: {prompts_dir / GATHERING_PROMPT_FILE}")
    if not recommendation_template:
        raise ValueError(
            f"Recommendation prompt not found or empty: {prompts_dir / RECOMMENDATION_PROMPT_FILE}"
        )

    missing = [p for p in TEMPLATE_PLACEHOLDERS if p not in recommendation_template]
    if missing:
        raise ValueError(f"Recommendation prompt is missing placeholders: {missing}")

    prompts = PromptSet(
        gathering_prompt=gathering_prompt,
        recommendation_template=recommendation_template,
    )
    _prompt_cache[cache_key] = prompts
    return prompts
