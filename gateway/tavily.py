from typing import Any, Dict, List, Optional

import httpx


class WebSearchError(Exception):
    def __init__(self, detail: Dict[str, Any]):
        self.detail = detail
        super().__init__(str(detail.get("error") or "web_search_failed"))


class TavilyClient:
    """Web search used when the selected provider has no built-in retrieval."""

    def __init__(self, api_key: Optional[str], max_results: int = 5, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.max_results = max_results
        self.client = client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search_raw(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: Optional[int] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results or self.max_results,
        }
        return await self._post("https://api.tavily.com/search", payload)

    async def search(self, query: str) -> List[Dict[str, str]]:
        """Normalized results as `[{title, snippet, link}]`; raises `WebSearchError` on failure."""
        data = await self.search_raw(query)
        if data.get("error"):
            raise WebSearchError(data)
        results: List[Dict[str, str]] = []
        for item in data.get("results") or []:
            link = item.get("url") or ""
            if not link:
                continue
            results.append(
                {
                    "title": item.get("title") or link,
                    "snippet": item.get("content") or "",
                    "link": link,
                }
            )
        return results

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Tavily accepts the key in the JSON payload; keep the header as well.
            payload = {**payload, "api_key": self.api_key}
            headers["X-API-Key"] = self.api_key
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
