"""
Wikipedia tools.

``wikipedia_search`` lists matching article titles through the opensearch
API; ``wikipedia_get_article`` fetches an article's summary for its canonical
URL and the parsed page for its text. HTML is reduced to plain text with
BeautifulSoup before it reaches the model.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from bs4 import BeautifulSoup

from cara.tools.registry import Tool, ToolError, ToolParameter

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Cara-Educational-App/1.0"
HTTP_OK = 200
HTTP_NOT_FOUND = 404


class WikipediaError(ToolError):
    pass


class WikipediaClient:
    """Thin async client for the Wikipedia action and REST APIs."""

    def __init__(
        self,
        language: str = "en",
        search_limit: int = 10,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = f"https://{language}.wikipedia.org"
        self.search_limit = search_limit
        self.client = http_client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
        )

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        logger.debug("→ Wikipedia: GET %s %s", url, params or "")
        try:
            return await self.client.get(url, params=params)
        except httpx.HTTPError as e:
            raise WikipediaError(f"{type(e).__name__}: {e}") from e

    async def search_articles(self, query: str) -> list[dict[str, str]]:
        """Return ``title``/``extract``/``url`` dicts for articles matching ``query``."""
        response = await self._get(
            f"{self.base_url}/w/api.php",
            params={"action": "opensearch", "search": query, "limit": self.search_limit, "format": "json"},
        )
        if response.status_code != HTTP_OK:
            raise WikipediaError(f"HTTP {response.status_code}")

        body = response.json()
        if not isinstance(body, list) or len(body) != 4:
            return []

        _, titles, extracts, urls = body
        return [
            {"title": title, "extract": extract, "url": url}
            for title, extract, url in zip(titles, extracts, urls, strict=False)
        ]

    async def get_article(self, title: str) -> dict[str, Any]:
        """Fetch an article summary: title, extract, url and image (if any)."""
        response = await self._get(f"{self.base_url}/api/rest_v1/page/summary/{quote(title, safe='')}")
        if response.status_code == HTTP_NOT_FOUND:
            raise WikipediaError("Article not found")
        if response.status_code != HTTP_OK:
            raise WikipediaError(f"HTTP {response.status_code}")

        body = response.json()
        url = (body.get("content_urls") or {}).get("desktop", {}).get("page")
        if not url:
            raise WikipediaError("Could not fetch article URL")

        return {
            "title": body.get("title") or title,
            "extract": body.get("extract") or "",
            "url": url,
            "image": (body.get("originalimage") or {}).get("source"),
        }

    async def get_full_article(self, title: str) -> dict[str, Any]:
        """Fetch the summary plus the parsed HTML content of an article."""
        article = await self.get_article(title)

        response = await self._get(
            f"{self.base_url}/w/api.php",
            params={"action": "parse", "page": title, "format": "json"},
        )
        if response.status_code != HTTP_OK:
            raise WikipediaError(f"HTTP {response.status_code}")

        body = response.json()
        if "error" in body:
            raise WikipediaError(body["error"].get("info") or "Article not found")

        article["content"] = body.get("parse", {}).get("text", {}).get("*", "")
        return article

    async def aclose(self) -> None:
        await self.client.aclose()


def html_to_text(html: str) -> str:
    return BeautifulSoup(html, "html.parser").get_text()


def wikipedia_search_tool(client: WikipediaClient) -> Tool:
    async def search(args: dict[str, Any]) -> str:
        query = args["query"]
        try:
            articles = await client.search_articles(query)
        except ToolError as e:
            raise ToolError(f"Wikipedia search failed: {e}") from e

        if not articles:
            return f"No Wikipedia articles found for '{query}'."

        results = "\n".join(
            f"{index}. {article['title']} - {article['url']}" for index, article in enumerate(articles, 1)
        )
        return f"Wikipedia search results for '{query}':\n{results}"

    return Tool(
        name="wikipedia_search",
        description=(
            "Searches Wikipedia for articles based on a given query. Use this tool when you need to find "
            "information on a topic. Returns a list of article titles and URLs. "
            'Example: {"query": "Elixir programming language"}'
        ),
        parameters=(
            ToolParameter(
                name="query",
                type="string",
                required=True,
                doc="The search query to find Wikipedia articles.",
            ),
        ),
        callback=search,
    )


def wikipedia_get_article_tool(client: WikipediaClient) -> Tool:
    async def get_article(args: dict[str, Any]) -> str:
        try:
            article = await client.get_full_article(args["title"])
        except ToolError as e:
            raise ToolError(f"Failed to retrieve Wikipedia article: {e}") from e

        text = html_to_text(article["content"])
        return f"Title: {article['title']}\nURL: {article['url']}\n\nContent:\n{text}"

    return Tool(
        name="wikipedia_get_article",
        description=(
            "Retrieves the full content of a Wikipedia article given its exact title. Use this tool when you "
            "need detailed information from a specific Wikipedia article. "
            'Example: {"title": "Elixir (programming language)"}'
        ),
        parameters=(
            ToolParameter(
                name="title",
                type="string",
                required=True,
                doc="The exact title of the Wikipedia article to retrieve.",
            ),
        ),
        callback=get_article,
    )
