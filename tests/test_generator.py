import json
from typing import List, Optional

import pytest

from pagegen.errors import AllCredentialsQuotaLimited, ProviderError
from pagegen.generator import (
    ContentGenerator,
    clean_title,
    fallback_title,
    format_title_case,
    parse_generated_content,
)

KEY_A = "AIzaSy" + "a" * 30


class FakeGemini:
    def __init__(self, replies: List[str]):
        self.replies = list(replies)
        self.prompts: List[str] = []
        self.json_flags: List[bool] = []

    async def generate_text(self, api_key, prompt, json_output=False, **kwargs) -> str:
        self.prompts.append(prompt)
        self.json_flags.append(json_output)
        return self.replies.pop(0)


class FakeOrchestrator:
    """Runs the operation once with a fixed key, or raises ``error``."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.max_attempts: List[int] = []

    async def run(self, operation, max_attempts=5, on_status=None, priority=0):
        self.max_attempts.append(max_attempts)
        if self.error is not None:
            raise self.error
        return await operation(KEY_A)


ARTICLE = {
    "article_html": "<h2>Why it matters</h2><p>Text</p>",
    "faq": [
        {"question": "Is it waterproof?", "answer": "Yes."},
        {"question": "", "answer": "dropped"},
        "not a dict",
    ],
    "meta_description": "A short description.",
    "meta_keywords": "luxury phone, vertu",
}


def test_format_title_case_keeps_small_words_lower():
    assert format_title_case("the best phones of the year") == "The Best Phones of the Year"
    assert format_title_case("top 5G phones in the UK") == "Top 5G Phones in the UK"


def test_clean_title_strips_labels_and_quotes():
    assert clean_title('Title: "Luxury Phones Guide"\nextra') == "Luxury Phones Guide"
    assert clean_title("   ") == ""


def test_fallback_title_uses_title_type():
    assert fallback_title("luxury phones", "review") == "Luxury Phones Review: An Honest Evaluation"
    assert fallback_title("luxury phones") == "Luxury Phones: A Complete Guide"


def test_parse_generated_content_filters_bad_faq_items():
    content = parse_generated_content("```json\n" + json.dumps(ARTICLE) + "\n```")

    assert content.article_html.startswith("<h2>")
    assert [item.question for item in content.faq_items] == ["Is it waterproof?"]
    assert content.meta_keywords == "luxury phone, vertu"


def test_parse_generated_content_requires_article():
    with pytest.raises(ValueError):
        parse_generated_content('{"faq": []}')
    with pytest.raises(ValueError):
        parse_generated_content("no json here")


@pytest.mark.asyncio
async def test_generate_page_title_cleans_reply():
    orchestrator = FakeOrchestrator()
    client = FakeGemini(['"where to buy luxury phones online"'])
    generator = ContentGenerator(orchestrator, client)

    title = await generator.generate_page_title("luxury phones", "purchase")

    assert title == "Where to Buy Luxury Phones Online"
    assert orchestrator.max_attempts == [3]
    assert "luxury phones" in client.prompts[0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [AllCredentialsQuotaLimited(3600), ProviderError(503, "overloaded")],
)
async def test_generate_page_title_falls_back_on_failure(error):
    generator = ContentGenerator(FakeOrchestrator(error), FakeGemini([]))

    title = await generator.generate_page_title("luxury phones", "best")

    assert title == "The Best Luxury Phones"


@pytest.mark.asyncio
async def test_generate_page_content_parses_json_reply():
    orchestrator = FakeOrchestrator()
    client = FakeGemini([json.dumps(ARTICLE)])
    generator = ContentGenerator(orchestrator, client, content_max_attempts=4)

    content = await generator.generate_page_content(
        "luxury phones", "Luxury Phones Guide", user_prompt="mention the warranty"
    )

    assert content.meta_description == "A short description."
    assert client.json_flags == [True]
    assert "mention the warranty" in client.prompts[0]
    assert orchestrator.max_attempts == [4]


@pytest.mark.asyncio
async def test_generate_page_content_propagates_pool_errors():
    generator = ContentGenerator(FakeOrchestrator(AllCredentialsQuotaLimited(60)), FakeGemini([]))

    with pytest.raises(AllCredentialsQuotaLimited):
        await generator.generate_page_content("luxury phones", "Luxury Phones Guide")
