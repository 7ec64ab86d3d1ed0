from typing import List, Dict, Optional, Any, Tuple

from ..models import (
    log, POSTS_PER_PAGE, IMAGE_TIMEOUT, SiteProfile, PostStub, PostPage, PostDetail, CreatorProfile
)
from ..exceptions import MalformedPostError
from .session import fetch_with_retry, RateLimiter, API_HEADERS


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def search_params(tag: Optional[str] = None, q: Optional[str] = None) -> Dict[str, str]:
    params = {}
    if tag:
        params["tag"] = tag
    # The search endpoint ignores queries shorter than three characters
    if q and len(q) >= 3:
        params["q"] = q
    return params


class KemonoClient:
    """Thin async wrapper around the creator/post API.

    All requests go through one shared RateLimiter; the limiter outlives a
    single generation run and is shared by every caller of this client.
    """

    def __init__(self, session, profile: SiteProfile, limiter: Optional[RateLimiter] = None):
        self.session = session
        self.profile = profile
        self.limiter = limiter or RateLimiter(profile.api_delay)

    def _api_url(self, service: str, creator_id: str, *parts: str) -> str:
        tail = "/".join(str(p) for p in parts)
        return f"{self.profile.api_base_url}/{service}/user/{creator_id}/{tail}"

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        headers = dict(API_HEADERS)
        headers.update(self.profile.headers)
        data, _ = await fetch_with_retry(
            self.session, url, 'json', limiter=self.limiter, params=params or None,
            extra_headers=headers, max_retries=self.profile.max_retries
        )
        return data

    async def list_posts(self, service: str, creator_id: str, offset: int = 0, limit: int = POSTS_PER_PAGE,
                         tag: Optional[str] = None, q: Optional[str] = None) -> PostPage:
        params = {"o": str(offset)}
        params.update(search_params(tag, q))
        data = await self._get_json(self._api_url(service, creator_id, "posts"), params)
        if isinstance(data, dict):
            data = data.get("results") or data.get("posts") or []
        if not isinstance(data, list):
            raise MalformedPostError(f"Unexpected post list payload for {service}/{creator_id}")

        stubs = [PostStub.from_api(p, original_offset=offset) for p in data if isinstance(p, dict) and p.get("id")]
        # The API does not report a total here
        return PostPage(stubs=stubs[:limit])

    async def collect_post_stubs(self, service: str, creator_id: str, tag: Optional[str] = None,
                                 q: Optional[str] = None, max_posts: Optional[int] = None) -> List[PostStub]:
        """Walk the post list page by page until a short page comes back."""
        stubs: List[PostStub] = []
        seen = set()
        offset = 0
        while True:
            page = await self.list_posts(service, creator_id, offset, tag=tag, q=q)
            for stub in page.stubs:
                if stub.id in seen: continue
                seen.add(stub.id)
                stubs.append(stub)
            log.info(f"Fetched {len(stubs)} post stubs so far (offset {offset})")
            if len(page.stubs) < POSTS_PER_PAGE: break
            if max_posts and len(stubs) >= max_posts: break
            offset += POSTS_PER_PAGE
        return stubs[:max_posts] if max_posts else stubs

    async def get_post_detail(self, service: str, creator_id: str, post_id: str) -> PostDetail:
        data = await self._get_json(self._api_url(service, creator_id, "post", post_id))
        return PostDetail.from_api(data)

    async def fetch_bulk_page(self, service: str, creator_id: str, offset: int,
                              tag: Optional[str] = None, q: Optional[str] = None) -> List[PostDetail]:
        """Fetch one list page and keep the entries that carry full content.

        Unlike ``list_posts`` the search term is sent as given; bulk pages
        only come back with content when some search parameter is present.
        """
        params = {"o": str(offset)}
        if tag:
            params["tag"] = tag
        elif q:
            params["q"] = q
        data = await self._get_json(self._api_url(service, creator_id, "posts"), params)
        if isinstance(data, dict):
            data = data.get("results") or data.get("posts") or []
        details = []
        for raw in data if isinstance(data, list) else []:
            if not isinstance(raw, dict) or "content" not in raw:
                continue
            try:
                details.append(PostDetail.from_api(raw))
            except MalformedPostError:
                continue
        return details

    async def fetch_binary(self, url: str) -> Tuple[bytes, Optional[str]]:
        data, headers = await fetch_with_retry(
            self.session, url, 'bytes', limiter=self.limiter,
            extra_headers={'Accept': 'image/avif,image/webp,image/*,*/*;q=0.8', **self.profile.headers},
            max_retries=self.profile.max_retries, timeout=IMAGE_TIMEOUT
        )
        return data, headers.get('Content-Type')

    async def fetch_creator_profile(self, service: str, creator_id: str) -> CreatorProfile:
        data = await self._get_json(self._api_url(service, creator_id, "profile"))
        if not isinstance(data, dict):
            raise MalformedPostError(f"Unexpected profile payload for {service}/{creator_id}")
        return CreatorProfile(name=data.get("name"), post_count=_as_int(data.get("post_count")))

    async def fetch_tags(self, service: str, creator_id: str) -> List[Dict[str, Any]]:
        data = await self._get_json(self._api_url(service, creator_id, "tags"))
        if isinstance(data, dict):
            data = data.get("props", {}).get("tags") or data.get("tags") or []
        tags = []
        for entry in data if isinstance(data, list) else []:
            if isinstance(entry, dict) and entry.get("tag") and (_as_int(entry.get("post_count")) or 0) > 0:
                tags.append(entry)
        return tags
