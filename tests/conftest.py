import io
import struct
import pytest
from PIL import Image

from kemono_epub.models import SiteProfile, PostDetail, CreatorProfile
from kemono_epub.exceptions import FetchError


def make_image(fmt="PNG", size=(4, 4), mode="RGB", color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new(mode, size, color if mode != "CMYK" else (0, 0, 0, 0)).save(buf, format=fmt)
    return buf.getvalue()


def oversized_bmp(width=20000, height=20000):
    """Bare BMP header whose pixel count trips Pillow's decompression bomb check."""
    file_header = struct.pack("<2sIHHI", b"BM", 54, 0, 0, 54)
    info_header = struct.pack("<IiiHHIIiiII", 40, width, height, 1, 24, 0, 0, 2835, 2835, 0, 0)
    return file_header + info_header


class FakeClient:
    """In-memory stand-in for KemonoClient that records every request."""

    def __init__(self, images=None, posts=None, bulk_pages=None, profile=None):
        self.profile = profile or SiteProfile(name="test")
        self.images = images or {}
        self.posts = posts or {}
        self.bulk_pages = bulk_pages or {}
        self.binary_calls = []
        self.detail_calls = []
        self.bulk_calls = []

    async def fetch_binary(self, url):
        self.binary_calls.append(url)
        if url not in self.images:
            raise FetchError(url, 404)
        data, content_type = self.images[url]
        return data, content_type

    async def get_post_detail(self, service, creator_id, post_id):
        self.detail_calls.append(post_id)
        if post_id not in self.posts:
            raise FetchError(f"https://kemono.cr/api/v1/{service}/user/{creator_id}/post/{post_id}", 404)
        return PostDetail.from_api(self.posts[post_id])

    async def fetch_bulk_page(self, service, creator_id, offset, tag=None, q=None):
        self.bulk_calls.append((offset, tag, q))
        if offset not in self.bulk_pages:
            raise FetchError(f"bulk page {offset}", 500)
        return [PostDetail.from_api(p) for p in self.bulk_pages[offset] if "content" in p]

    async def fetch_creator_profile(self, service, creator_id):
        return CreatorProfile(name="Fake Creator", post_count=len(self.posts))


@pytest.fixture
def png_bytes():
    return make_image("PNG")


@pytest.fixture
def profile():
    return SiteProfile(name="test")
