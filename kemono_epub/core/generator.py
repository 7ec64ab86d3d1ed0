import os
import asyncio
from typing import Callable, Dict, List, Optional, Sequence

from ..models import (
    log, POSTS_PER_PAGE, PROGRESS_MESSAGE_ONLY,
    GenerationOptions, GenerationResult, CreatorInfo, PostStub, PostDetail, SiteProfile
)
from ..exceptions import (
    KemonoEpubError, PackerStateError, DependencyUnavailableError, GenerationCancelled
)
from ..utils.naming import ensure_epub_filename, sanitize_filename
from .image_processor import ImageEncoder
from .normalizer import ContentNormalizer
from .packer import ArchivePacker

ProgressCallback = Callable[[float, str], None]

WEIGHT_SETUP = 5
WEIGHT_BULK_FETCH = 15
WEIGHT_PROCESS_POSTS = 75
WEIGHT_PACKING = 5

# Errors that signal an integration bug or a caller decision, never a bad post
FATAL_ERRORS = (PackerStateError, DependencyUnavailableError, GenerationCancelled)


def bulk_query(options: GenerationOptions) -> Dict[str, str]:
    """Search parameter that makes list pages carry full post content."""
    if options.tag_filter:
        return {"tag": options.tag_filter}
    q = options.custom_q or "<p>"
    if options.custom_q and len(options.custom_q) < 3:
        q = "<p"
    return {"q": q}


def bulk_offsets(stubs: Sequence[PostStub], page_size: int = POSTS_PER_PAGE) -> List[int]:
    offsets = set()
    for stub in stubs:
        if stub.original_offset is None: continue
        offsets.add(stub.original_offset)
        if stub.original_offset - page_size >= 0:
            offsets.add(stub.original_offset - page_size)
    return sorted(offsets)


class FileSink:
    """Download sink that writes the finished archive into a directory."""

    def __init__(self, directory: str = "."):
        self.directory = directory

    def save(self, blob: bytes, filename: str) -> str:
        os.makedirs(self.directory, exist_ok=True)
        path = os.path.join(self.directory, sanitize_filename(filename) or "kemono_ebook.epub")
        with open(path, "wb") as f:
            f.write(blob)
        log.info(f"Saved EPUB to {path} ({len(blob)} bytes)")
        return path


class EpubGenerator:
    """Drives one generation run: fetch, normalize and pack posts in order.

    An instance owns its post cache, normalizer and packer, so it must not
    be reused for a second run.
    """

    def __init__(self, client, options: Optional[GenerationOptions] = None,
                 on_progress: Optional[ProgressCallback] = None,
                 cancel_event: Optional[asyncio.Event] = None,
                 profile: Optional[SiteProfile] = None):
        self.client = client
        self.options = options or GenerationOptions()
        self.profile = profile or client.profile
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.encoder = ImageEncoder(reencode_all=self.options.reencode_all_images)
        self.normalizer = ContentNormalizer(
            client, self.profile, self.encoder,
            dedupe_query_variants=self.options.dedupe_query_variants,
            include_attachments=self.options.include_attachments,
        )
        self.post_cache: Dict[str, PostDetail] = {}
        self.progress = 0.0
        self.chapter_count = 0

    def report(self, percent: float, message: str):
        if percent != PROGRESS_MESSAGE_ONLY:
            self.progress = max(self.progress, min(100.0, float(percent)))
            percent = self.progress
        if not self.on_progress: return
        try:
            self.on_progress(percent, message)
        except Exception as e:
            # A broken progress display must not break the build
            log.debug(f"Progress callback failed: {e}")

    def message(self, text: str):
        self.report(PROGRESS_MESSAGE_ONLY, text)

    def check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise GenerationCancelled("Generation cancelled by caller")

    async def fetch_post_full_data(self, creator: CreatorInfo, post_id: str) -> PostDetail:
        if post_id in self.post_cache:
            log.debug(f"Cache hit for post {post_id}")
            self.message(f"Cache hit for post {post_id[:10]}...")
            return self.post_cache[post_id]
        self.message(f"Fetching post details: {post_id[:10]}...")
        detail = await self.client.get_post_detail(creator.service, creator.creator_id, post_id)
        self.post_cache[post_id] = detail
        return detail

    async def prepare_bulk_fetch(self, creator: CreatorInfo, stubs: Sequence[PostStub]) -> int:
        """Populate the post cache from list pages around the selected posts.

        Best effort: failed pages are logged and the affected posts are
        fetched one by one later. Returns the number of selected posts cached.
        """
        offsets = bulk_offsets(stubs)
        if not offsets:
            self.message("No page offsets known. Posts will be fetched individually.")
            return 0

        query = bulk_query(self.options)
        selected = {s.id for s in stubs}
        self.message(f"Identified {len(offsets)} page offsets for bulk fetch: {', '.join(map(str, offsets))}")

        for i, offset in enumerate(offsets, 1):
            self.check_cancelled()
            self.message(f"Bulk page {i}/{len(offsets)} (offset {offset})...")
            try:
                details = await self.client.fetch_bulk_page(
                    creator.service, creator.creator_id, offset,
                    tag=query.get("tag"), q=query.get("q"),
                )
            except KemonoEpubError as e:
                log.warning(f"Bulk fetch failed for offset {offset}: {e}")
                continue
            matched = 0
            for detail in details:
                self.post_cache.setdefault(detail.id, detail)
                if detail.id in selected: matched += 1
            log.info(f"Bulk fetched offset {offset}: {len(details)} posts with content, {matched} selected")

        cached = len(selected & self.post_cache.keys())
        log.info(f"Bulk prefetch cached {cached} of {len(selected)} selected posts")
        return cached

    async def _add_cover(self, packer: ArchivePacker, url: str):
        try:
            data, content_type = await self.client.fetch_binary(url)
            await packer.add_cover_image(data, content_type, source=url)
            self.report(self.progress, f"Fetched cover image: {url[:40]}...")
        except PackerStateError:
            raise
        except (KemonoEpubError, asyncio.TimeoutError, OSError) as e:
            log.warning(f"Could not add cover from {url}: {e}")
            self.report(self.progress, f"Warning: Could not add cover. {str(e)[:30]}")

    async def _add_post(self, packer: ArchivePacker, creator: CreatorInfo, stub: PostStub):
        detail = await self.fetch_post_full_data(creator, stub.id)
        normalized = await self.normalizer.normalize(detail.id, detail.content_html, detail.attachments)
        for asset in normalized.assets:
            packer.add_image_to_manifest(asset)
        packer.add_chapter(detail.title or stub.title or "Untitled Post", normalized.safe_markup)

    async def generate(self, creator: CreatorInfo, selected_posts: Sequence[PostStub]) -> bytes:
        """Build the archive for ``selected_posts``, which must already be in chapter order."""
        name = creator.display_name
        packer = ArchivePacker(title=name, author=name, language=self.options.language, encoder=self.encoder)
        packer.add_stylesheet()

        self.report(0, "Initializing EPUB structure and cover...")
        if self.options.cover_image_url:
            await self._add_cover(packer, self.options.cover_image_url)
        self.report(WEIGHT_SETUP, "Setup complete.")

        total = len(selected_posts)
        if self.options.bulk_prefetch and total:
            self.report(self.progress, f"Preparing for bulk fetch ({total} posts)...")
            await self.prepare_bulk_fetch(creator, selected_posts)
        base = WEIGHT_SETUP + WEIGHT_BULK_FETCH
        self.report(base, "Bulk fetch phase finished. Processing individual posts...")

        step = WEIGHT_PROCESS_POSTS / total if total else 0
        for i, stub in enumerate(selected_posts):
            self.check_cancelled()
            done = base + (i + 1) * step
            self.report(self.progress, f"Processing chapter {i + 1} of {total}: {stub.title[:30]}...")
            try:
                await self._add_post(packer, creator, stub)
            except FATAL_ERRORS:
                raise
            except Exception as e:
                log.warning(f"Skipping post {stub.id} ({stub.title}): {e}")
                self.report(done, f"Error on chapter {i + 1} of {total}: {stub.title[:20]}... - {str(e)[:30]}")
            else:
                self.report(done, f"Processed chapter {i + 1} of {total}: {stub.title}")

            if self.options.yield_every and (i + 1) % self.options.yield_every == 0:
                await asyncio.sleep(0)

        self.report(base + WEIGHT_PROCESS_POSTS, "All posts processed. Finalizing EPUB...")
        packer.add_table_of_contents_page()

        self.report(base + WEIGHT_PROCESS_POSTS + WEIGHT_PACKING, "Finalizing EPUB file...")
        loop = asyncio.get_running_loop()
        blob = await loop.run_in_executor(None, packer.pack_to_blob)
        self.chapter_count = packer.chapter_count
        return blob


async def generate_epub(creator: CreatorInfo, posts: Sequence[PostStub], options: Optional[GenerationOptions] = None,
                        on_progress: Optional[ProgressCallback] = None, *, client, sink=None,
                        cancel_event: Optional[asyncio.Event] = None) -> GenerationResult:
    """Generate an EPUB for ``posts`` and hand it to ``sink`` when one is given."""
    options = options or GenerationOptions()
    generator = EpubGenerator(client, options, on_progress=on_progress, cancel_event=cancel_event)
    blob = await generator.generate(creator, posts)

    file_name = ensure_epub_filename(options.file_name, f"{creator.display_name}.epub")
    if sink is not None:
        sink.save(blob, file_name)
        generator.report(100, "EPUB generated and download started!")
    else:
        generator.report(100, "EPUB generated.")
    return GenerationResult(data=blob, file_name=file_name,
                            chapter_count=generator.chapter_count, requested_count=len(posts))
