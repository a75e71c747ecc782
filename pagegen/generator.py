"""Title and article generation on top of the key pool."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pagegen.errors import KeyPoolError, ProviderError
from pagegen.gemini import GeminiClient
from pagegen.models import FAQItem, GeneratedContent
from pagegen.rate_limiter import StatusCallback
from pagegen.retry import RetryOrchestrator

logger = logging.getLogger(__name__)

TITLE_MAX_ATTEMPTS = 3
CONTENT_MAX_ATTEMPTS = 5
MAX_FAQ_ITEMS = 8

TITLE_STYLES: Dict[str, str] = {
    "purchase": "Focus on where to buy, official channels and authorised retailers.",
    "informational": "Write a complete guide covering features and key facts.",
    "review": "Focus on ratings, pros and cons and evaluations.",
    "commercial": "Emphasise premium collections and official stores.",
    "how-to": "Give step-by-step, practical selection advice.",
    "recommendations": "Present top picks and expert suggestions.",
    "comparison": "Compare alternatives side by side.",
    "expert": "Write an authoritative, in-depth analysis.",
    "best": "Highlight the best options and why they stand out.",
    "top": "Present top-rated, premium choices.",
    "most": "Focus on the most popular and most trusted options.",
}

FALLBACK_TITLES: Dict[str, str] = {
    "purchase": "Where to Buy {keyword}: Official Channels and Retailers",
    "informational": "{keyword}: Everything You Need to Know",
    "review": "{keyword} Review: An Honest Evaluation",
    "commercial": "{keyword}: The Premium Collection",
    "how-to": "How to Choose {keyword}: A Practical Guide",
    "recommendations": "Recommended {keyword}: Our Top Picks",
    "comparison": "{keyword} Compared: Which Is Better?",
    "expert": "{keyword}: An Expert Guide",
    "best": "The Best {keyword}",
    "top": "Top {keyword}: Premium Choices",
    "most": "The Most Popular {keyword}",
}

SMALL_WORDS = frozenset(
    {"a", "an", "and", "as", "at", "but", "by", "for", "in", "of", "on", "or", "the", "to", "vs"}
)
JSON_BLOCK_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


def format_title_case(title: str) -> str:
    words = title.split()
    result = []
    for index, word in enumerate(words):
        starts_phrase = index == 0 or words[index - 1].endswith(":")
        if not starts_phrase and word.lower() in SMALL_WORDS:
            result.append(word.lower())
        elif word.isupper() and len(word) > 1:
            result.append(word)
        else:
            result.append(word[:1].upper() + word[1:])
    return " ".join(result)


def fallback_title(keyword: str, title_type: Optional[str] = None) -> str:
    template = FALLBACK_TITLES.get(title_type or "", "{keyword}: A Complete Guide")
    return format_title_case(template.format(keyword=keyword.strip()))


def clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = re.sub(r"^(title\s*:\s*)", "", title, flags=re.IGNORECASE)
    title = title.strip().strip("\"'*#").strip()
    return title


def parse_generated_content(raw: str) -> GeneratedContent:
    """Parse the JSON document Gemini returns for an article."""
    match = JSON_BLOCK_PATTERN.search(raw)
    if not match:
        raise ValueError("Gemini response does not contain a JSON object")
    data: Dict[str, Any] = json.loads(match.group(0))

    article = str(data.get("article_html") or data.get("articleContent") or "").strip()
    if not article:
        raise ValueError("Gemini response has no article content")

    faq_items: List[FAQItem] = []
    for item in data.get("faq") or data.get("faqItems") or []:
        if not isinstance(item, dict):
            continue
        question = str(item.get("question", "")).strip()
        answer = str(item.get("answer", "")).strip()
        if question and answer:
            faq_items.append(FAQItem(question=question, answer=answer))

    return GeneratedContent(
        article_html=article,
        faq_items=faq_items[:MAX_FAQ_ITEMS],
        meta_description=str(data.get("meta_description") or "").strip(),
        meta_keywords=str(data.get("meta_keywords") or "").strip(),
    )


def build_title_prompt(keyword: str, title_type: Optional[str]) -> str:
    style = TITLE_STYLES.get(title_type or "", "")
    return (
        "You are an SEO copywriter writing in British English.\n"
        f'Write ONE page title (50-60 characters) for the search keyword "{keyword}".\n'
        f"{style}\n"
        "Return only the title, without quotes or explanations."
    )


def build_content_prompt(
    keyword: str,
    page_title: str,
    title_type: Optional[str],
    user_prompt: Optional[str],
) -> str:
    style = TITLE_STYLES.get(title_type or "", "")
    direction = ""
    if user_prompt and user_prompt.strip():
        direction = f'\nFollow this direction from the editor: "{user_prompt.strip()}"\n'
    return (
        "You are an expert SEO content strategist writing in British English.\n"
        f'Write a concise landing page article for the keyword "{keyword}" '
        f'under the page title "{page_title}". Stay on the title\'s topic.\n'
        f"{style}\n{direction}"
        "Use 2-3 <h2> headings (never <h1>), short <p> paragraphs and one list.\n"
        "Return a JSON object with the fields: article_html (string), "
        "faq (list of 5-8 objects with question and answer), "
        "meta_description (150-160 characters), meta_keywords (comma separated)."
    )


class ContentGenerator:
    """Generates page copy through the retry orchestrator."""

    def __init__(
        self,
        orchestrator: RetryOrchestrator,
        client: GeminiClient,
        content_max_attempts: int = CONTENT_MAX_ATTEMPTS,
    ):
        self.orchestrator = orchestrator
        self.client = client
        self.content_max_attempts = content_max_attempts

    async def generate_page_title(
        self,
        keyword: str,
        title_type: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        prompt = build_title_prompt(keyword, title_type)

        async def operation(api_key: str) -> str:
            return await self.client.generate_text(
                api_key, prompt, temperature=0.9, max_output_tokens=256
            )

        try:
            raw = await self.orchestrator.run(
                operation, max_attempts=TITLE_MAX_ATTEMPTS, on_status=on_status
            )
        except (KeyPoolError, ProviderError) as exc:
            title = fallback_title(keyword, title_type)
            logger.warning("Title generation failed (%s), using fallback: %s", exc, title)
            return title

        title = clean_title(raw)
        if not title:
            return fallback_title(keyword, title_type)
        return format_title_case(title)

    async def generate_page_content(
        self,
        keyword: str,
        page_title: str,
        title_type: Optional[str] = None,
        user_prompt: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> GeneratedContent:
        prompt = build_content_prompt(keyword, page_title, title_type, user_prompt)

        async def operation(api_key: str) -> GeneratedContent:
            raw = await self.client.generate_text(
                api_key, prompt, json_output=True, max_output_tokens=8192
            )
            return parse_generated_content(raw)

        return await self.orchestrator.run(
            operation, max_attempts=self.content_max_attempts, on_status=on_status
        )
