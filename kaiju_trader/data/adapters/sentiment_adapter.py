"""
KAIJU TRADER — Sentiment Adapters
Fear & Greed index and news-vote sentiment over aiohttp.
"""
import aiohttp
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kaiju_trader.data.adapters.base import SentimentSource
from kaiju_trader.data.models import NewsItem
from kaiju_trader.config.settings import get_settings
from kaiju_trader.utils.errors import DataFetchError
from kaiju_trader.utils.helpers import base_asset, clamp, safe_divide
from kaiju_trader.utils.logger import get_logger

logger = get_logger("sentiment_adapter")


class _HttpSource(SentimentSource):
    """Shared aiohttp session handling."""

    def __init__(self, name: str, timeout_seconds: Optional[float] = None):
        super().__init__(name)
        self._timeout = timeout_seconds or get_settings().data_collection.request_timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            logger.info("sentiment_source_connected", source=self.name)

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("sentiment_source_disconnected", source=self.name)

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self._session:
            await self.connect()
        try:
            async with self._session.get(url, params=params) as resp:
                if resp.status != 200:
                    raise DataFetchError(f"{self.name} returned HTTP {resp.status}")
                return await resp.json()
        except aiohttp.ClientError as e:
            raise DataFetchError(f"{self.name} request failed: {e}") from e


class FearGreedSource(_HttpSource):
    """
    Market-wide Fear & Greed index (0 extreme fear .. 100 extreme greed),
    mapped linearly to [-1, 1] and applied to every symbol.
    """

    def __init__(self, url: Optional[str] = None):
        super().__init__("fear_greed")
        self.url = url or get_settings().data_collection.fear_greed_url

    @staticmethod
    def index_to_score(value: float) -> float:
        return clamp((value - 50.0) / 50.0, -1.0, 1.0)

    async def fetch_scores(self, symbols: List[str]) -> Dict[str, Dict[str, float]]:
        data = await self._get_json(self.url, params={"limit": 1})
        try:
            value = float(data["data"][0]["value"])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DataFetchError(f"fear_greed payload malformed: {e}") from e
        score = self.index_to_score(value)
        return {symbol: {"score": score, "volume": 0.0} for symbol in symbols}


class NewsSentimentSource(_HttpSource):
    """
    CryptoPanic-style posts with community votes. Each post scores
    (positive - negative) / (positive + negative); a symbol's score is the
    mean over its posts and its volume is the post count.
    """

    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None):
        super().__init__("news")
        settings = get_settings().data_collection
        self.url = url or settings.news_api_url
        self.api_key = api_key if api_key is not None else settings.news_api_key
        self._last_posts: List[Dict[str, Any]] = []

    async def _fetch_posts(self, symbols: List[str]) -> List[Dict[str, Any]]:
        currencies = ",".join(sorted({base_asset(s) for s in symbols}))
        params = {"currencies": currencies, "public": "true"}
        if self.api_key:
            params["auth_token"] = self.api_key
        data = await self._get_json(self.url, params=params)
        posts = data.get("results", []) if isinstance(data, dict) else []
        self._last_posts = posts
        return posts

    @staticmethod
    def post_score(post: Dict[str, Any]) -> float:
        votes = post.get("votes") or {}
        positive = float(votes.get("positive", 0)) + float(votes.get("liked", 0))
        negative = float(votes.get("negative", 0)) + float(votes.get("disliked", 0))
        return clamp(safe_divide(positive - negative, positive + negative), -1.0, 1.0)

    @staticmethod
    def _post_symbols(post: Dict[str, Any], symbols: List[str]) -> List[str]:
        codes = {c.get("code", "").upper() for c in post.get("currencies") or []}
        return [s for s in symbols if base_asset(s) in codes]

    async def fetch_scores(self, symbols: List[str]) -> Dict[str, Dict[str, float]]:
        posts = await self._fetch_posts(symbols)
        buckets: Dict[str, List[float]] = {}
        for post in posts:
            score = self.post_score(post)
            for symbol in self._post_symbols(post, symbols):
                buckets.setdefault(symbol, []).append(score)

        return {
            symbol: {"score": sum(scores) / len(scores), "volume": float(len(scores))}
            for symbol, scores in buckets.items()
        }

    async def fetch_news(self, symbols: List[str]) -> List[NewsItem]:
        posts = await self._fetch_posts(symbols)
        items = []
        for post in posts:
            published = post.get("published_at") or post.get("created_at")
            try:
                published_at = datetime.fromisoformat(str(published).replace("Z", "+00:00"))
            except ValueError:
                published_at = datetime.now(timezone.utc)
            items.append(NewsItem(
                title=post.get("title", ""),
                content=post.get("body", "") or "",
                url=post.get("url", ""),
                published_at=published_at,
                source=(post.get("source") or {}).get("title", self.name),
                sentiment=self.post_score(post),
                relevant_symbols=self._post_symbols(post, symbols),
            ))
        return items
