"""Page assembly and WordPress publishing."""

import html
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from pagegen.models import FAQItem, ProductSummary

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = frozenset(
    {
        "google_api_key",
        "googleApiKey",
        "api_key",
        "apiKey",
        "app_password",
        "appPassword",
        "consumer_key",
        "consumerKey",
        "consumer_secret",
        "consumerSecret",
        "access_token",
        "accessToken",
        "refresh_token",
        "refreshToken",
    }
)

TAG_PATTERN = re.compile(r"<[^>]*>")

PRODUCTS_PER_PAGE = 8

DEFAULT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{{PAGE_TITLE}}</title>
<meta name="description" content="{{META_DESCRIPTION}}">
<meta name="keywords" content="{{META_KEYWORDS}}">
<script type="application/ld+json">{{FAQ_STRUCTURED_DATA}}</script>
</head>
<body>
<main>
<h1>{{PAGE_TITLE}}</h1>
<article>{{AI_GENERATED_CONTENT}}</article>
<section class="products">{{PRODUCTS}}</section>
<section class="faq">{{FAQ_HTML}}</section>
</main>
</body>
</html>
"""


class PublishError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class WordPressSite:
    url: str
    username: str
    app_password: str


def create_slug(text: str) -> str:
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-") or "page"


def strip_tags(text: str) -> str:
    return TAG_PATTERN.sub("", text).strip()


def render_faq_html(faq_items: List[FAQItem]) -> str:
    blocks = []
    for item in faq_items:
        blocks.append(
            '<details class="faq-item">'
            f"<summary>{html.escape(item.question)}</summary>"
            f"<p>{html.escape(item.answer)}</p>"
            "</details>"
        )
    return "\n".join(blocks)


def build_faq_structured_data(faq_items: List[FAQItem]) -> str:
    """schema.org FAQPage JSON-LD, or an empty string without FAQ items."""
    if not faq_items:
        return ""
    schema = {
        "@context": "https://schema.org",
        "@type": "FAQPage",
        "mainEntity": [
            {
                "@type": "Question",
                "name": strip_tags(item.question),
                "acceptedAnswer": {"@type": "Answer", "text": strip_tags(item.answer)},
            }
            for item in faq_items
        ],
    }
    # Must not close the surrounding <script> element early.
    return json.dumps(schema, ensure_ascii=False, indent=2).replace("</", "<\\/")


def is_out_of_stock(product: Dict[str, Any]) -> bool:
    if product.get("stock_status") == "outofstock":
        return True
    if product.get("in_stock") is False:
        return True
    if product.get("manage_stock") is True:
        quantity = product.get("stock_quantity")
        if isinstance(quantity, (int, float)) and quantity <= 0:
            return True
    return False


def parse_products(data: Any) -> List[ProductSummary]:
    """WooCommerce product objects to ProductSummary, skipping unusable entries."""
    if not isinstance(data, list):
        return []

    products: List[ProductSummary] = []
    for item in data:
        if not isinstance(item, dict) or is_out_of_stock(item):
            continue
        name = strip_tags(html.unescape(str(item.get("name") or "")))
        link = item.get("permalink") or item.get("link")
        if not name or not link or not isinstance(item.get("id"), int):
            continue
        images = item.get("images") or []
        categories = item.get("categories") or []
        image = images[0] if images and isinstance(images[0], dict) else {}
        category = categories[0] if categories and isinstance(categories[0], dict) else {}
        products.append(
            ProductSummary(
                id=item["id"],
                name=name,
                link=str(link),
                image_url=image.get("src"),
                price=str(item["price"]) if item.get("price") else None,
                regular_price=str(item["regular_price"]) if item.get("regular_price") else None,
                on_sale=bool(item.get("on_sale")),
                category=category.get("name"),
            )
        )
    return products


def render_products_html(products: List[ProductSummary]) -> str:
    cards = []
    for product in products:
        parts = [f'<a class="product-link" href="{html.escape(product.link)}">']
        if product.image_url:
            parts.append(
                f'<img src="{html.escape(product.image_url)}" alt="{html.escape(product.name)}">'
            )
        parts.append(f"<h3>{html.escape(product.name)}</h3>")
        if product.price:
            price = f'<span class="price">{html.escape(product.price)}</span>'
            if product.on_sale and product.regular_price:
                price = f"<del>{html.escape(product.regular_price)}</del> " + price
            parts.append(f"<p>{price}</p>")
        parts.append("</a>")
        cards.append('<div class="product-card">' + "".join(parts) + "</div>")
    return "\n".join(cards)


def render_page(
    template: str,
    page_title: str,
    article_html: str,
    faq_items: Optional[List[FAQItem]] = None,
    meta_description: str = "",
    meta_keywords: str = "",
    products: Optional[List[ProductSummary]] = None,
) -> str:
    faq_items = faq_items or []
    values = {
        "PAGE_TITLE": html.escape(page_title),
        "META_DESCRIPTION": html.escape(meta_description),
        "META_KEYWORDS": html.escape(meta_keywords),
        "AI_GENERATED_CONTENT": article_html,
        "PRODUCTS": render_products_html(products or []),
        "FAQ_HTML": render_faq_html(faq_items),
        "FAQ_STRUCTURED_DATA": build_faq_structured_data(faq_items),
    }
    rendered = template
    for name, value in values.items():
        rendered = rendered.replace("{{" + name + "}}", value)
    return rendered


def sanitize_payload(value: Any) -> Any:
    """Drop credential fields, recursively. WordPress sites keep url and username only."""
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    if not isinstance(value, dict):
        return value

    result: Dict[str, Any] = {}
    for name, item in value.items():
        if name in SENSITIVE_FIELDS:
            continue
        if name == "wordpress" and isinstance(item, dict):
            result[name] = {"url": item.get("url"), "username": item.get("username")}
            continue
        result[name] = sanitize_payload(item)
    return result


def normalize_site_url(url: str) -> str:
    base = url.strip()
    if not base:
        raise PublishError("WordPress URL is required")
    if not base.startswith(("http://", "https://")):
        base = f"https://{base}"
    return base.rstrip("/")


class WordPressPublisher:
    """Creates pages and reads shop products through the WordPress REST API."""

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def fetch_related_products(
        self, site: WordPressSite, keyword: str, limit: int = PRODUCTS_PER_PAGE
    ) -> List[ProductSummary]:
        """Search in-stock WooCommerce products matching the keyword."""
        term = keyword.strip()
        if not term:
            return []

        endpoint = f"{normalize_site_url(site.url)}/wp-json/wc/v3/products"
        params = {"search": term, "per_page": limit, "stock_status": "instock"}

        try:
            response = await self.http_client.get(
                endpoint,
                params=params,
                auth=(site.username, site.app_password),
            )
        except httpx.TimeoutException:
            raise PublishError(f"Timeout fetching products from {endpoint}", 408)
        except httpx.RequestError as exc:
            raise PublishError(f"Cannot reach WordPress at {endpoint}: {exc}")

        if response.status_code >= 400:
            raise PublishError(
                f"Product search failed ({response.status_code}): {response.reason_phrase}",
                response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise PublishError("Product search returned a non-JSON body")

        products = parse_products(data)[:limit]
        logger.info("Found %d product(s) for %r on %s", len(products), term, site.url)
        return products

    async def publish_page(
        self,
        site: WordPressSite,
        title: str,
        html_content: str,
        slug: str,
        status: str = "publish",
    ) -> str:
        if not site.username or not site.app_password:
            raise PublishError("WordPress credentials are required")

        endpoint = f"{normalize_site_url(site.url)}/wp-json/wp/v2/pages"
        body = {"title": title, "slug": slug, "content": html_content, "status": status}

        try:
            response = await self.http_client.post(
                endpoint,
                json=body,
                auth=(site.username, site.app_password),
            )
        except httpx.TimeoutException:
            raise PublishError(f"Timeout publishing to {endpoint}", 408)
        except httpx.RequestError as exc:
            raise PublishError(f"Cannot reach WordPress at {endpoint}: {exc}")

        if response.status_code >= 400:
            message = response.reason_phrase or "Request failed"
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("message"):
                message = str(data["message"])
            logger.error(
                "WordPress publish failed (%s) for %s: %s",
                response.status_code,
                site.url,
                message,
            )
            raise PublishError(
                f"WordPress rejected the page ({response.status_code}): {message}",
                response.status_code,
            )

        data = response.json()
        link = str(data.get("link") or f"{normalize_site_url(site.url)}/{slug}/")
        logger.info("Published page %s (id=%s)", link, data.get("id"))
        return link
