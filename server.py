# /// script
# requires-python = ">=3.8"
# dependencies = [
#   "fastapi",
#   "uvicorn",
#   "aiohttp[speedups]",
#   "yarl",
#   "EbookLib",
#   "beautifulsoup4",
#   "Pillow",
#   "lxml",
#   "tqdm",
#   "PyYAML",
# ]
# ///

import uvicorn
from typing import Dict, List, Optional
from urllib.parse import quote
from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from kemono_epub.models import log, CreatorInfo, GenerationOptions, PostStub, parse_published
from kemono_epub.exceptions import KemonoEpubError, FetchError
from kemono_epub.core.profiles import ProfileManager
from kemono_epub.core.session import get_session, RateLimiter
from kemono_epub.core.api import KemonoClient
from kemono_epub.core.generator import generate_epub

app = FastAPI()

@app.middleware("http")
async def log_requests(request, call_next):
    log.info(f"Incoming request: {request.method} {request.url}")
    response = await call_next(request)
    return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Chapters-Included", "X-Chapters-Requested"],
)

class PostItem(BaseModel):
    id: str
    title: str
    published: Optional[str] = None
    original_offset: Optional[int] = None

class GenerateRequest(BaseModel):
    service: str
    creator_id: str
    creator_name: Optional[str] = None
    site: Optional[str] = None
    posts: List[PostItem]
    file_name: Optional[str] = None
    cover_image_url: Optional[str] = None
    use_default_cover: bool = False
    custom_q: Optional[str] = None
    tag_filter: Optional[str] = None
    bulk_prefetch: bool = True
    dedupe_query_variants: bool = True
    reencode_all_images: bool = False
    include_attachments: bool = True

# One limiter per site profile, shared by every request this process serves
_limiters: Dict[str, RateLimiter] = {}

def make_client(session, site: Optional[str] = None) -> KemonoClient:
    profile = ProfileManager.get_instance().get_profile(site)
    limiter = _limiters.get(profile.name)
    if limiter is None:
        limiter = _limiters[profile.name] = RateLimiter(profile.api_delay)
    return KemonoClient(session, profile, limiter)

def content_disposition(file_name: str) -> str:
    ascii_name = file_name.encode("ascii", "replace").decode("ascii").replace("?", "_").replace('"', "_")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(file_name)}"

@app.get("/ping")
async def ping(): return {"status": "ok"}

@app.get("/creator/{service}/{creator_id}/posts")
async def list_posts(service: str, creator_id: str, tag: Optional[str] = None, q: Optional[str] = None,
                     site: Optional[str] = None, max_posts: Optional[int] = None):
    async with get_session() as session:
        client = make_client(session, site)
        try:
            stubs = await client.collect_post_stubs(service, creator_id, tag=tag, q=q, max_posts=max_posts)
        except FetchError as e:
            raise HTTPException(status_code=502, detail=str(e))
        except KemonoEpubError as e:
            raise HTTPException(status_code=500, detail=str(e))
        try:
            name = (await client.fetch_creator_profile(service, creator_id)).name
        except KemonoEpubError as e:
            log.warning(f"Creator name lookup failed: {e}")
            name = None

    stubs.sort(key=PostStub.sort_key)
    return {
        "creator_name": name,
        "count": len(stubs),
        "posts": [
            {
                "id": s.id,
                "title": s.title,
                "published": s.published.isoformat() if s.published else None,
                "original_offset": s.original_offset,
            }
            for s in stubs
        ],
    }

@app.post("/generate")
async def generate(req: GenerateRequest):
    log.info(f"Received request: {len(req.posts)} posts for {req.service}/{req.creator_id}")
    if not req.posts:
        raise HTTPException(status_code=400, detail="No posts selected.")

    # The caller's order is not trusted; chapters follow publication time
    stubs = sorted(
        (PostStub(id=p.id, title=p.title or f"Untitled Post {p.id}",
                  published=parse_published(p.published), original_offset=p.original_offset)
         for p in req.posts),
        key=PostStub.sort_key,
    )
    creator = CreatorInfo(service=req.service, creator_id=req.creator_id, creator_name=req.creator_name)

    async with get_session() as session:
        client = make_client(session, req.site)
        cover = req.cover_image_url
        if not cover and req.use_default_cover:
            cover = client.profile.default_cover_url(req.service, req.creator_id)

        options = GenerationOptions(
            file_name=req.file_name,
            cover_image_url=cover,
            custom_q=req.custom_q,
            tag_filter=req.tag_filter,
            bulk_prefetch=req.bulk_prefetch,
            dedupe_query_variants=req.dedupe_query_variants,
            reencode_all_images=req.reencode_all_images,
            include_attachments=req.include_attachments,
        )

        def on_progress(percent: float, message: str):
            log.debug(f"[{percent:.0f}%] {message}" if percent >= 0 else message)

        try:
            result = await generate_epub(creator, stubs, options, on_progress, client=client)
        except KemonoEpubError as e:
            log.exception(f"Generation failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    log.info(f"Sending: {result.file_name} ({result.chapter_count} of {result.requested_count} posts)")
    return Response(
        content=result.data,
        media_type="application/epub+zip",
        headers={
            "Content-Disposition": content_disposition(result.file_name),
            "X-Chapters-Included": str(result.chapter_count),
            "X-Chapters-Requested": str(result.requested_count),
        },
    )

if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
