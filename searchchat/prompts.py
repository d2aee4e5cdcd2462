from typing import Dict, List, Sequence

from .markers import encode_search_images, encode_search_urls
from .schemas import SearchResult
from .styles import style_prompt

ASSISTANT_INTRO = (
    "You are SearchChat, an AI assistant that answers questions using up-to-date information from the web."
)

MATH_RULES = """Always use LaTeX for mathematical expressions.
Inline math must be wrapped in single dollar signs: $content$
Display math must be wrapped in double dollar signs: $$content$$
Display math goes on its own line with nothing else on that line.
Do not nest math delimiters or mix styles.
Never write a bare dollar sign for currency; write "USD 20" or "20 dollars" instead of "$20"."""

CITATION_RULES = """Citation rules:
- Cite sources inline as [n](URL) where URL is the exact absolute URL of the source.
- Number citations from 1 in the order sources are first used; reuse the same number for the same URL.
- Only cite URLs from the list of available sources below.
- Never write a bare [n] without its (URL).
- Do not add a references or sources section at the end."""

MARKER_RULES = """After your answer, end with exactly these two hidden lines:
{urls_line}
{images_line}"""

OPEN_MARKER_RULES = """After your answer, end with exactly these two hidden lines, listing every source URL and every
image URL returned by your tool calls, in order, separated by |:
<!-- SEARCH_URLS: url1|url2 -->
<!-- SEARCH_IMAGES: image1|image2 -->"""

TOOL_RULES = """You can call tools:
- websearch: current events, facts that may have changed, anything you are not sure about.
- retrieval: when the user asks about a specific website, URL or domain.
- weather: current weather for a location.
- greeting: simple greetings that need no lookup.
Cite every URL that a websearch or retrieval tool call returned using the citation rules."""

QUERY_EXPANSION_PROMPT = """Generate up to 4 additional web search queries that together cover the user's question from different angles.
Return only a JSON array of strings, with no commentary."""


def format_results(results: Sequence[SearchResult]) -> str:
    blocks = []
    for i, r in enumerate(results, start=1):
        blocks.append(f"[{i}] {r.title}\nURL: {r.url}\nContent: {r.content}")
    return "\n\n".join(blocks)


def marker_rules(results: Sequence[SearchResult], images: Sequence[str]) -> str:
    """Spell out the closing marker lines with the known lists; tool-only turns get the open form."""
    if not results and not images:
        return OPEN_MARKER_RULES
    return MARKER_RULES.format(
        urls_line=encode_search_urls(r.url for r in results),
        images_line=encode_search_images(images),
    )


def build_system_prompt(
    style: str,
    query: str,
    results: Sequence[SearchResult],
    images: Sequence[str],
    tool_mode: bool = False,
) -> str:
    parts: List[str] = [style_prompt(style), ASSISTANT_INTRO]
    if tool_mode:
        parts.append(TOOL_RULES)
    if results:
        parts.append(f'Web search results for "{query}":\n\n{format_results(results)}')
        urls = "\n".join(r.url for r in results)
        parts.append(f"Available sources (cite only these):\n{urls}")
    if images:
        parts.append("Related images:\n" + "\n".join(images))
    parts.append(CITATION_RULES)
    parts.append(MATH_RULES)
    parts.append(marker_rules(results, images))
    return "\n\n".join(p for p in parts if p)


def build_query_expansion_messages(query: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": QUERY_EXPANSION_PROMPT},
        {"role": "user", "content": query},
    ]
