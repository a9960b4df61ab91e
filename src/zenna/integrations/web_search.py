"""
Web search for real-time questions.

General, news and time queries use the DuckDuckGo instant answer API (no API
key required). Weather queries go to wttr.in, which returns structured
current conditions for a free-text location.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog

from zenna_shared.errors import IntegrationError

logger = structlog.get_logger()

SERVICE_NAME = "Web search"
WEATHER_URL = "https://wttr.in"


@dataclass
class SearchResult:
    query: str
    search_type: str
    source: str
    text: str

    @property
    def found(self) -> bool:
        return bool(self.text)


class WebSearchClient:
    """Client for web search using DuckDuckGo and wttr.in."""

    def __init__(self, base_url: str = "https://api.duckduckgo.com/",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.client = httpx.AsyncClient(
            timeout=10.0,
            transport=transport,
            headers={
                "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
            }
        )

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> dict:
        try:
            response = await self.client.get(url, params=params)
        except httpx.TransportError as e:
            logger.error("web_search_failed", url=url, error=str(e))
            raise IntegrationError.from_transport(SERVICE_NAME, e) from e
        if response.is_error:
            logger.error("web_search_failed", url=url, status_code=response.status_code)
            raise IntegrationError.from_status(SERVICE_NAME, response.status_code)
        return response.json()

    async def instant_answers(self, query: str, max_results: int = 3) -> List[Dict[str, str]]:
        """DuckDuckGo abstract plus related topics."""
        data = await self._get_json(self.base_url, params={
            "q": query, "format": "json", "no_html": "1", "skip_disambig": "1",
        })

        results = []
        if data.get("Abstract"):
            results.append({
                "snippet": data["Abstract"],
                "source": data.get("AbstractSource", "DuckDuckGo"),
            })
        if data.get("Answer"):
            results.append({"snippet": str(data["Answer"]), "source": "DuckDuckGo"})
        for topic in data.get("RelatedTopics", []):
            if isinstance(topic, dict) and topic.get("Text"):
                results.append({"snippet": topic["Text"], "source": "DuckDuckGo"})
        return results[:max_results]

    async def weather(self, location: str) -> str:
        data = await self._get_json(f"{WEATHER_URL}/{quote(location)}", params={"format": "j1"})
        current = (data.get("current_condition") or [{}])[0]
        if not current:
            return ""
        description = ((current.get("weatherDesc") or [{}])[0]).get("value", "")
        parts = [
            f"Current weather in {location}: {description}".rstrip(": "),
            f"{current.get('temp_F')}°F ({current.get('temp_C')}°C)",
            f"feels like {current.get('FeelsLikeF')}°F",
            f"humidity {current.get('humidity')}%",
        ]
        forecast = data.get("weather") or []
        if forecast:
            today = forecast[0]
            parts.append(f"today's high {today.get('maxtempF')}°F, low {today.get('mintempF')}°F")
        return ", ".join(parts)

    async def search(self, query: str, search_type: str = "general", max_results: int = 3) -> SearchResult:
        """Run a search and format the results as text for the model."""
        logger.info("web_search_started", query=query, search_type=search_type)

        if search_type == "weather":
            text = await self.weather(query)
            result = SearchResult(query, search_type, "wttr.in", text)
        else:
            results = await self.instant_answers(query, max_results)
            lines = []
            for i, item in enumerate(results, 1):
                lines.append(f"{i}. {item['snippet']}")
                lines.append(f"   (Source: {item['source']})")
            result = SearchResult(query, search_type, "DuckDuckGo", "\n".join(lines))

        logger.info("web_search_completed", query=query, found=result.found)
        return result

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
