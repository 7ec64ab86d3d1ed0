import os
import re
import logging
import aiohttp
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any
from urllib.parse import urlparse

from .exceptions import MalformedPostError

# --- Constants ---
KEMONO_API_BASE_URL = "https://kemono.cr/api/v1"
KEMONO_SITE_BASE_URL = "https://kemono.cr"
KEMONO_DATA_BASE_URL = "https://kemono.cr/data"
KEMONO_ICON_BASE_URL = "https://img.kemono.cr"
POSTS_PER_PAGE = 50
API_CALL_DELAY = 0.5
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=45)
IMAGE_TIMEOUT = aiohttp.ClientTimeout(total=60)
MAX_RETRIES = 3
RETRY_DELAY = 2.0

# Archive layout (relative to the OEBPS folder)
TEXT_DIR_IN_EPUB = "Text"
IMAGE_DIR_IN_EPUB = "Images"
STYLE_DIR_IN_EPUB = "Styles"
STYLESHEET_PATH = f"{STYLE_DIR_IN_EPUB}/stylesheet.css"

PASSTHROUGH_IMAGE_MIMES = {
    'image/jpeg': 'jpg',
    'image/png': 'png',
    'image/gif': 'gif',
    'image/svg+xml': 'svg',
}
IMAGE_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'webp', 'bmp', 'svg', 'avif', 'tif', 'tiff'}
IMAGE_UNAVAILABLE_MARKER = "(Image not available)"

# Progress callback sentinel: message only, percentage unchanged
PROGRESS_MESSAGE_ONLY = -1

# --- Logging ---
_LOGLEVEL = os.getenv("LOGLEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, _LOGLEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)

# --- Data Structures ---

@dataclass
class SiteProfile:
    """Base URLs and request pacing for one deployment of the API."""
    name: str
    domain_patterns: List[str] = field(default_factory=list)
    api_base_url: str = KEMONO_API_BASE_URL
    site_base_url: str = KEMONO_SITE_BASE_URL
    data_base_url: str = KEMONO_DATA_BASE_URL
    icon_base_url: str = KEMONO_ICON_BASE_URL
    api_delay: float = API_CALL_DELAY
    max_retries: int = MAX_RETRIES
    headers: Dict[str, str] = field(default_factory=dict)

    def default_cover_url(self, service: str, creator_id: str) -> str:
        return f"{self.icon_base_url}/icons/{service}/{creator_id}"

@dataclass
class GenerationOptions:
    """Configuration passed from CLI or Server to the generator."""
    file_name: Optional[str] = None
    cover_image_url: Optional[str] = None
    custom_q: Optional[str] = None
    tag_filter: Optional[str] = None
    bulk_prefetch: bool = True
    dedupe_query_variants: bool = True
    reencode_all_images: bool = False
    include_attachments: bool = True
    language: str = "en"
    yield_every: int = 10

@dataclass
class CreatorInfo:
    service: str
    creator_id: str
    creator_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = (self.creator_name or "").strip()
        return name or "Unknown"

@dataclass
class CreatorProfile:
    name: Optional[str]
    post_count: Optional[int] = None

def parse_published(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Compare everything as naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

@dataclass(frozen=True)
class PostStub:
    id: str
    title: str
    published: Optional[datetime] = None
    original_offset: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any], original_offset: Optional[int] = None) -> "PostStub":
        post_id = str(data.get("id"))
        title = (data.get("title") or "").strip() or f"Untitled Post {post_id}"
        return cls(id=post_id, title=title, published=parse_published(data.get("published")),
                   original_offset=original_offset)

    def sort_key(self):
        # Undated posts sort first, ties keep id order
        return (self.published is not None, self.published or datetime.min, self.id)

@dataclass
class PostPage:
    stubs: List[PostStub]
    total_count: Optional[int] = None

@dataclass
class Attachment:
    path: str
    name: str = ""
    server: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> Optional["Attachment"]:
        if not isinstance(data, dict) or not data.get("path"):
            return None
        return cls(path=data["path"], name=data.get("name") or "", server=data.get("server"))

    @property
    def extension(self) -> str:
        source = self.name or self.path
        return source.rsplit(".", 1)[-1].lower() if "." in source else ""

    @property
    def is_image(self) -> bool:
        return self.extension in IMAGE_EXTENSIONS

@dataclass
class PostDetail:
    id: str
    title: str
    content_html: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    published: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Any) -> "PostDetail":
        if isinstance(data, dict) and isinstance(data.get("post"), dict):
            data = data["post"]
        if not isinstance(data, dict) or not data.get("id"):
            raise MalformedPostError("Post data is missing an id")

        attachments = []
        main_file = Attachment.from_api(data.get("file"))
        if main_file:
            attachments.append(main_file)
        for raw in data.get("attachments") or []:
            att = Attachment.from_api(raw)
            if att and all(a.path != att.path for a in attachments):
                attachments.append(att)

        return cls(
            id=str(data["id"]),
            title=(data.get("title") or "").strip(),
            content_html=data.get("content") or "",
            attachments=attachments,
            published=parse_published(data.get("published")),
        )

@dataclass
class AssetDescriptor:
    original_url: str
    archive_path: str
    media_type: str
    payload: bytes

@dataclass
class NormalizedPost:
    safe_markup: str
    assets: List[AssetDescriptor] = field(default_factory=list)

@dataclass
class ManifestItem:
    id: str
    archive_path: str
    media_type: str
    properties: Optional[str] = None

@dataclass
class TocEntry:
    title: str
    archive_path: str

@dataclass
class GenerationResult:
    data: bytes
    file_name: str
    chapter_count: int
    requested_count: int

# --- Helper Functions ---

def parse_selection_spec(spec: str) -> Optional[List[int]]:
    """Parse a 1-based index selection like '1,3-5' into a sorted list."""
    if not spec: return None
    indexes = set()
    for part in spec.split(','):
        part = part.strip()
        if not part: continue
        try:
            if '-' in part:
                start, end = part.split('-', 1)
                start, end = int(start), int(end)
                if start > end: start, end = end, start
                indexes.update(range(start, end + 1))
            else:
                indexes.add(int(part))
        except ValueError:
            log.warning(f"Ignoring invalid selection '{part}'")
    if not indexes: return None
    return sorted(i for i in indexes if i > 0)

_CREATOR_PATH = re.compile(r'/([^/?#]+)/user/([^/?#]+)')

def parse_creator_url(url: str) -> Optional[CreatorInfo]:
    """Pull service and creator id out of a creator page URL like /patreon/user/123."""
    if not url: return None
    match = _CREATOR_PATH.search(urlparse(url).path or url)
    if not match: return None
    return CreatorInfo(service=match.group(1), creator_id=match.group(2))
