"""Landing page pipeline: title, content, products, render, publish."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pagegen.errors import KeyPoolError, ProviderError
from pagegen.generator import ContentGenerator
from pagegen.models import (
    TASK_FETCHING_PRODUCTS,
    TASK_GENERATING_CONTENT,
    TASK_GENERATING_TITLE,
    TASK_PUBLISHING,
    TASK_QUEUED,
    TASK_RENDERING,
    ProductSummary,
)
from pagegen.publishing import (
    DEFAULT_TEMPLATE,
    PublishError,
    WordPressPublisher,
    WordPressSite,
    create_slug,
    render_page,
    sanitize_payload,
)
from pagegen.task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class GenerationRequest:
    keyword: str
    site: WordPressSite
    template: str = DEFAULT_TEMPLATE
    page_title: Optional[str] = None
    title_type: Optional[str] = None
    user_prompt: Optional[str] = None
    slug: Optional[str] = None
    include_products: bool = True
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class Services:
    tasks: TaskStore
    generator: ContentGenerator
    publisher: WordPressPublisher


def _optional_text(body: Dict[str, Any], name: str) -> Optional[str]:
    value = body.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_generation_request(body: Dict[str, Any]) -> GenerationRequest:
    """Validate a /generate-page body. Raises ValueError with a client-facing message."""
    keyword = _optional_text(body, "keyword")
    if not keyword:
        raise ValueError("keyword is required")

    wordpress = body.get("wordpress")
    if not isinstance(wordpress, dict):
        raise ValueError("wordpress credentials are required")
    site = WordPressSite(
        url=str(wordpress.get("url") or "").strip(),
        username=str(wordpress.get("username") or "").strip(),
        app_password=str(wordpress.get("app_password") or ""),
    )
    if not site.url or not site.username or not site.app_password:
        raise ValueError("wordpress url, username and app_password are required")

    template = body.get("template_content")
    if template is not None and not str(template).strip():
        raise ValueError("template_content must not be empty")

    return GenerationRequest(
        keyword=keyword,
        site=site,
        template=str(template) if template is not None else DEFAULT_TEMPLATE,
        page_title=_optional_text(body, "page_title"),
        title_type=_optional_text(body, "title_type"),
        user_prompt=_optional_text(body, "user_prompt"),
        slug=_optional_text(body, "slug"),
        include_products=body.get("include_products", True) is not False,
        raw=body,
    )


async def run_generation(task_id: str, request: GenerationRequest, services: Services) -> None:
    """Drive one task to completion. Failures end the task as failed; nothing is raised."""
    tasks = services.tasks

    def reporter(status: str):
        def on_status(message: str) -> None:
            tasks.update(task_id, status, message)

        return on_status

    try:
        tasks.update(
            task_id,
            TASK_QUEUED,
            "Task created",
            keyword=request.keyword,
            page_title=request.page_title,
            details={"request": sanitize_payload(request.raw)},
        )

        page_title = request.page_title
        if not page_title:
            await tasks.wait_if_paused(task_id)
            tasks.update(task_id, TASK_GENERATING_TITLE, "Generating page title...")
            page_title = await services.generator.generate_page_title(
                request.keyword,
                request.title_type,
                on_status=reporter(TASK_GENERATING_TITLE),
            )
            tasks.update(
                task_id,
                TASK_GENERATING_TITLE,
                f"Generated title: {page_title}",
                page_title=page_title,
            )

        await tasks.wait_if_paused(task_id)
        tasks.update(task_id, TASK_GENERATING_CONTENT, "Generating article and FAQ...")
        content = await services.generator.generate_page_content(
            request.keyword,
            page_title,
            request.title_type,
            request.user_prompt,
            on_status=reporter(TASK_GENERATING_CONTENT),
        )

        products: List[ProductSummary] = []
        if request.include_products:
            await tasks.wait_if_paused(task_id)
            tasks.update(task_id, TASK_FETCHING_PRODUCTS, "Searching related products...")
            try:
                products = await services.publisher.fetch_related_products(
                    request.site, request.keyword
                )
            except PublishError as exc:
                # The page is still published without a product section.
                logger.warning("Task %s: product search failed, continuing: %s", task_id, exc)
            tasks.update(
                task_id,
                TASK_FETCHING_PRODUCTS,
                f"Found {len(products)} related product(s)",
                details={"product_count": len(products)},
            )

        await tasks.wait_if_paused(task_id)
        tasks.update(task_id, TASK_RENDERING, "Rendering HTML template...")
        html_content = render_page(
            request.template,
            page_title,
            content.article_html,
            content.faq_items,
            content.meta_description,
            content.meta_keywords,
            products,
        )
        slug = request.slug or create_slug(page_title) or create_slug(request.keyword)

        await tasks.wait_if_paused(task_id)
        tasks.update(
            task_id,
            TASK_PUBLISHING,
            "Publishing WordPress page...",
            details={"slug": slug, "faq_count": len(content.faq_items)},
        )
        page_url = await services.publisher.publish_page(
            request.site, page_title, html_content, slug
        )
    except (KeyPoolError, ProviderError, PublishError, ValueError) as exc:
        logger.error("Task %s failed: %s", task_id, exc)
        tasks.set_error(task_id, str(exc))
        return
    except Exception as exc:
        logger.exception("Task %s failed unexpectedly", task_id)
        tasks.set_error(task_id, f"Unexpected error: {exc}")
        return

    tasks.set_completed(task_id, "Page published", page_url)
    logger.info("Task %s completed: %s", task_id, page_url)
