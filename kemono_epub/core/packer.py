import io
import uuid
import asyncio
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, List, Optional
from xml.sax.saxutils import escape, quoteattr

try:
    from ebooklib import epub
    HAS_EBOOKLIB = True
except ImportError:
    HAS_EBOOKLIB = False

from ..models import (
    log, TEXT_DIR_IN_EPUB, IMAGE_DIR_IN_EPUB, STYLE_DIR_IN_EPUB, STYLESHEET_PATH,
    AssetDescriptor, ManifestItem, TocEntry
)
from ..exceptions import PackerStateError, DependencyUnavailableError
from ..utils.naming import sanitize_basename, UniqueNameRegistry
from .image_processor import ImageEncoder

XHTML_MEDIA_TYPE = "application/xhtml+xml"
CONTENTS_TITLE = "Table of Contents"

DEFAULT_STYLESHEET = """body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', sans-serif; line-height: 1.6; margin: 1.5em; color: #333; background-color: #fff; }
h1, h2 { text-align: left; margin-top: 1.5em; margin-bottom: 0.5em; line-height: 1.2; }
h1 { font-size: 1.8em; }
h2 { font-size: 1.5em; }
p { margin-top: 0; margin-bottom: 1em; }
img { max-width: 100%; height: auto; display: block; margin: 1em auto; border-radius: 4px; }
.img-block { margin: 0.5em 0; page-break-inside: avoid; break-inside: avoid; text-align: center; }
.img-block .caption { margin: 0.25em 0 0; font-size: 0.9em; color: #555; }
.image-unavailable { font-style: italic; color: #888; }
.epub-cover-image-container { text-align: center; page-break-after: always; }
.epub-cover-image-container img { max-height: 95vh; width: auto; }
.contents-list { list-style: none; padding-left: 0; }
.contents-list li { margin-bottom: 0.4em; }
"""

DOCUMENT_TEMPLATE = """<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" lang="{lang}" xml:lang="{lang}">
<head>
<title>{title}</title>
<link rel="stylesheet" type="text/css" href="../{stylesheet}"/>
</head>
<body>
{body}
</body>
</html>
"""


class PackerState(Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    SEALED = "sealed"


class ArchivePacker:
    """Accumulates manifest, spine and table of contents for one EPUB.

    Every add operation appends; nothing is ever removed. ``pack_to_blob``
    seals the packer, after which any further call is an error.
    """

    def __init__(self, title: str, author: str, language: str = "en",
                 encoder: Optional[ImageEncoder] = None, identifier: Optional[str] = None):
        if not HAS_EBOOKLIB:
            raise DependencyUnavailableError("EbookLib is required to write the EPUB archive")
        self.title = title or "Untitled"
        self.author = author or "Unknown"
        self.language = language or "en"
        self.encoder = encoder or ImageEncoder()
        self.identifier = identifier
        self.state = PackerState.EMPTY

        self.buckets: Dict[str, Dict[str, bytes]] = {
            TEXT_DIR_IN_EPUB: {}, IMAGE_DIR_IN_EPUB: {}, STYLE_DIR_IN_EPUB: {},
        }
        self._items: "OrderedDict[str, ManifestItem]" = OrderedDict()
        self._paths = set()
        self._doc_titles: Dict[str, str] = {}
        self._names = UniqueNameRegistry(reserved=("cover", "contents"))
        self._image_counter = 0
        self._has_stylesheet = False
        self._cover_page_id: Optional[str] = None
        self._contents_page_id: Optional[str] = None
        self._chapter_ids: List[str] = []
        self._chapter_toc: List[TocEntry] = []

    # --- State ---

    @property
    def manifest(self) -> List[ManifestItem]:
        return list(self._items.values())

    @property
    def spine(self) -> List[str]:
        spine = []
        if self._cover_page_id: spine.append(self._cover_page_id)
        if self._contents_page_id: spine.append(self._contents_page_id)
        return spine + self._chapter_ids

    @property
    def toc(self) -> List[TocEntry]:
        entries = []
        if self._contents_page_id:
            entries.append(TocEntry(CONTENTS_TITLE, self._items[self._contents_page_id].archive_path))
        return entries + self._chapter_toc

    @property
    def chapter_count(self) -> int:
        return len(self._chapter_ids)

    @property
    def has_cover(self) -> bool:
        return self._cover_page_id is not None

    def _begin_mutation(self, operation: str):
        if self.state is PackerState.SEALED:
            raise PackerStateError(f"Cannot {operation}: the archive has already been packed")
        self.state = PackerState.ACCUMULATING

    def _register(self, item: ManifestItem, payload: Optional[bytes] = None) -> ManifestItem:
        if item.id in self._items or item.archive_path in self._paths:
            raise PackerStateError(f"Duplicate manifest entry {item.id} ({item.archive_path})")
        self._items[item.id] = item
        self._paths.add(item.archive_path)
        if payload is not None:
            folder, _, name = item.archive_path.partition("/")
            self.buckets.setdefault(folder, {})[name] = payload
        return item

    def _render_document(self, title: str, body: str) -> bytes:
        return DOCUMENT_TEMPLATE.format(
            lang=escape(self.language), title=escape(title), stylesheet=STYLESHEET_PATH, body=body
        ).encode("utf-8")

    # --- Add operations ---

    def add_stylesheet(self, css_text: Optional[str] = None) -> ManifestItem:
        self._begin_mutation("add a stylesheet")
        if self._has_stylesheet:
            raise PackerStateError("The shared stylesheet is already registered")
        self._has_stylesheet = True
        css = css_text if css_text is not None else DEFAULT_STYLESHEET
        return self._register(ManifestItem("css", STYLESHEET_PATH, "text/css"), css.encode("utf-8"))

    async def add_cover_image(self, data: bytes, media_type: Optional[str] = None, source: str = "cover") -> ManifestItem:
        """Encode and register the cover image plus its page; the page always leads the spine."""
        self._begin_mutation("add a cover")
        if self._cover_page_id:
            raise PackerStateError("A cover has already been added")

        loop = asyncio.get_running_loop()
        encoded = await loop.run_in_executor(None, self.encoder.encode, data, source, media_type)

        image_path = f"{IMAGE_DIR_IN_EPUB}/cover.{encoded.extension}"
        image = self._register(ManifestItem("cover-image", image_path, encoded.media_type, "cover-image"), encoded.data)

        page_path = f"{TEXT_DIR_IN_EPUB}/cover.xhtml"
        body = ('<div class="epub-cover-image-container">'
                f'<img src={quoteattr("../" + image_path)} alt={quoteattr(self.title)}/></div>')
        self._register(ManifestItem("cover-xhtml", page_path, XHTML_MEDIA_TYPE), self._render_document("Cover", body))
        self._doc_titles["cover-xhtml"] = "Cover"
        self._cover_page_id = "cover-xhtml"
        log.info(f"Added cover image ({encoded.media_type}, {len(encoded.data)} bytes)")
        return image

    def add_chapter(self, title: str, safe_markup: str) -> ManifestItem:
        self._begin_mutation("add a chapter")
        title = (title or "").strip() or "Untitled"
        base = sanitize_basename(title) or f"chapter_{len(self._chapter_ids) + 1:03d}"
        basename = self._names.claim(base)

        path = f"{TEXT_DIR_IN_EPUB}/{basename}.xhtml"
        body = f"<h1>{escape(title)}</h1>\n<div class=\"post-content\">{safe_markup or ''}</div>"
        item = self._register(ManifestItem(f"ch-{basename}", path, XHTML_MEDIA_TYPE), self._render_document(title, body))
        self._doc_titles[item.id] = title
        self._chapter_ids.append(item.id)
        self._chapter_toc.append(TocEntry(title, path))
        return item

    def add_image_to_manifest(self, asset: AssetDescriptor) -> bool:
        """Register an encoded asset. Returns False when its path is already packaged."""
        self._begin_mutation("add an image")
        path = asset.archive_path
        if path in self._paths:
            log.debug(f"Image {path} already in manifest, skipping")
            return False
        if path.startswith("/") or ".." in PurePosixPath(path).parts:
            raise PackerStateError(f"Archive path must be relative: {path}")

        self._image_counter += 1
        item_id = f"img-{self._image_counter}"
        self._register(ManifestItem(item_id, path, asset.media_type), asset.payload)
        return True

    def add_table_of_contents_page(self) -> Optional[ManifestItem]:
        """Add a readable contents page after the cover, only for books with two or more chapters."""
        self._begin_mutation("add a contents page")
        if len(self._chapter_ids) <= 1 or self._contents_page_id:
            return None
        path = f"{TEXT_DIR_IN_EPUB}/contents.xhtml"
        # Rendered at pack time so chapters added later are listed too
        item = self._register(ManifestItem("toc-page", path, XHTML_MEDIA_TYPE))
        self._doc_titles[item.id] = CONTENTS_TITLE
        self._contents_page_id = item.id
        return item

    def _render_contents_page(self) -> bytes:
        rows = []
        for entry in self._chapter_toc:
            href = PurePosixPath(entry.archive_path).name
            rows.append(f"<li><a href={quoteattr(href)}>{escape(entry.title)}</a></li>")
        body = f"<h1>{escape(CONTENTS_TITLE)}</h1>\n<ol class=\"contents-list\">\n" + "\n".join(rows) + "\n</ol>"
        return self._render_document(CONTENTS_TITLE, body)

    # --- Serialization ---

    def _payload(self, item: ManifestItem) -> bytes:
        folder, _, name = item.archive_path.partition("/")
        return self.buckets[folder][name]

    def _build_book(self) -> epub.EpubBook:
        book = epub.EpubBook()
        book.FOLDER_NAME = "OEBPS"
        book.set_identifier(self.identifier or f"urn:uuid:{uuid.uuid4()}")
        book.set_title(self.title)
        book.set_language(self.language)
        book.add_author(self.author, role="aut", uid="author")

        for item in self._items.values():
            if item.id == "cover-image":
                cover = epub.EpubCover(uid=item.id, file_name=item.archive_path)
                cover.media_type = item.media_type
                cover.content = self._payload(item)
                book.add_item(cover)
            elif item.media_type == XHTML_MEDIA_TYPE:
                doc = epub.EpubHtml(uid=item.id, file_name=item.archive_path,
                                    title=self._doc_titles.get(item.id, ""), lang=self.language)
                doc.content = self._payload(item)
                doc.add_link(href=f"../{STYLESHEET_PATH}", rel="stylesheet", type="text/css")
                book.add_item(doc)
            elif item.media_type.startswith("image/"):
                book.add_item(epub.EpubImage(uid=item.id, file_name=item.archive_path,
                                             media_type=item.media_type, content=self._payload(item)))
            else:
                book.add_item(epub.EpubItem(uid=item.id, file_name=item.archive_path,
                                            media_type=item.media_type, content=self._payload(item)))

        if self._cover_page_id:
            book.add_metadata(None, "meta", "", OrderedDict([("name", "cover"), ("content", "cover-image")]))

        book.toc = [epub.Link(entry.archive_path, entry.title, f"nav-{n}") for n, entry in enumerate(self.toc, 1)]
        book.add_item(epub.EpubNcx(uid="ncx", file_name="toc.ncx"))
        nav = epub.EpubNav(uid="nav", file_name="toc.xhtml", title=CONTENTS_TITLE)
        nav.add_link(href=STYLESHEET_PATH, rel="stylesheet", type="text/css")
        book.add_item(nav)
        book.spine = self.spine
        return book

    def pack_to_blob(self) -> bytes:
        if self.state is PackerState.SEALED:
            raise PackerStateError("The archive has already been packed")
        if self.state is PackerState.EMPTY:
            raise PackerStateError("Nothing to pack")

        if self._contents_page_id:
            path = self._items[self._contents_page_id].archive_path
            self.buckets[TEXT_DIR_IN_EPUB][PurePosixPath(path).name] = self._render_contents_page()

        book = self._build_book()
        buffer = io.BytesIO()
        epub.write_epub(buffer, book, {
            "play_order": {"enabled": True, "start_from": 1},
            "epub3_pages": False,
            "raise_exceptions": True,
            "mtime": datetime.now(timezone.utc),
        })
        self.state = PackerState.SEALED
        blob = buffer.getvalue()
        log.info(f"Packed EPUB '{self.title}': {len(self._chapter_ids)} chapters, {len(self._items)} files, {len(blob)} bytes")
        return blob
