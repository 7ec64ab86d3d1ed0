import argparse
import sys
import asyncio
from typing import List, Optional
from tqdm import tqdm

from kemono_epub.models import (
    log, CreatorInfo, GenerationOptions, PostStub, parse_creator_url, parse_selection_spec
)
from kemono_epub.exceptions import KemonoEpubError
from kemono_epub.core.profiles import ProfileManager
from kemono_epub.core.session import get_session, RateLimiter
from kemono_epub.core.api import KemonoClient
from kemono_epub.core.generator import generate_epub, FileSink
from kemono_epub.utils.naming import FILENAME_PATTERNS, generate_dynamic_filename


def select_posts(stubs: List[PostStub], spec: Optional[str]) -> List[PostStub]:
    """Pick posts by 1-based chronological index; no spec means everything."""
    indexes = parse_selection_spec(spec)
    if not indexes: return stubs
    out_of_range = [i for i in indexes if i > len(stubs)]
    if out_of_range:
        log.warning(f"Ignoring selection beyond the {len(stubs)} available posts: {out_of_range}")
    return [stubs[i - 1] for i in indexes if i <= len(stubs)]


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Kemono creator posts to EPUB")
    parser.add_argument("url", nargs='?', help="Creator page URL (e.g. https://kemono.cr/patreon/user/123)")
    parser.add_argument("--service", help="Service name when no URL is given (e.g. patreon)")
    parser.add_argument("--creator", help="Creator id when no URL is given")
    parser.add_argument("-o", "--output-dir", default=".", help="Directory to write the EPUB into")
    parser.add_argument("--name", help="Output filename (sanitized, .epub added)")
    parser.add_argument("--pattern", choices=FILENAME_PATTERNS, default="creator_titles",
                        help="Filename pattern when --name is not given")
    parser.add_argument("--creator-name", help="Override the creator display name")
    parser.add_argument("--cover", help="Cover image URL (defaults to the creator icon)")
    parser.add_argument("--no-cover", action="store_true", help="Do not add a cover")
    parser.add_argument("--tag", help="Only include posts with this tag")
    parser.add_argument("-q", "--query", help="Only include posts matching this search (3+ characters)")
    parser.add_argument("--posts", help="Chronological post selection (e.g. '1,3-5')")
    parser.add_argument("--max-posts", type=int, default=None, help="Stop listing after this many posts")
    parser.add_argument("--list", action="store_true", help="List posts in chronological order and exit")
    parser.add_argument("--no-bulk-prefetch", action="store_true", help="Fetch every post individually")
    parser.add_argument("--keep-query-variants", action="store_true",
                        help="Treat image URLs differing only by query string as distinct")
    parser.add_argument("--reencode-images", action="store_true", help="Re-encode every image as PNG")
    parser.add_argument("--no-attachments", action="store_true", help="Skip image attachments")
    parser.add_argument("--delay", type=float, default=None, help="Seconds between API requests")
    parser.add_argument("--config", help="Extra sites.yaml with site profiles")
    return parser.parse_args(argv)


async def async_main(argv=None):
    args = parse_args(argv)

    creator = parse_creator_url(args.url) if args.url else None
    if not creator and args.service and args.creator:
        creator = CreatorInfo(service=args.service, creator_id=args.creator)
    if not creator:
        print("Provide a creator URL or both --service and --creator.")
        return 2

    manager = ProfileManager.get_instance()
    if args.config: manager.load_config(args.config, prepend=True)
    profile = manager.get_profile(args.url)
    delay = args.delay if args.delay is not None else profile.api_delay

    async with get_session() as session:
        client = KemonoClient(session, profile, RateLimiter(delay))

        if args.creator_name:
            creator.creator_name = args.creator_name
        else:
            try:
                creator.creator_name = (await client.fetch_creator_profile(creator.service, creator.creator_id)).name
            except KemonoEpubError as e:
                log.warning(f"Could not look up creator name: {e}")

        try:
            stubs = await client.collect_post_stubs(creator.service, creator.creator_id,
                                                    tag=args.tag, q=args.query, max_posts=args.max_posts)
        except KemonoEpubError as e:
            log.error(f"Failed to list posts: {e}")
            return 1

        stubs.sort(key=PostStub.sort_key)
        if args.list:
            for i, stub in enumerate(stubs, 1):
                date = stub.published.strftime("%Y-%m-%d") if stub.published else "----------"
                print(f"{i:4d}  {date}  {stub.title}")
            return 0

        selected = select_posts(stubs, args.posts)
        if not selected:
            print("No posts selected.")
            return 1

        cover = None
        if not args.no_cover:
            cover = args.cover or profile.default_cover_url(creator.service, creator.creator_id)

        options = GenerationOptions(
            file_name=args.name or generate_dynamic_filename(creator.display_name, selected, args.pattern),
            cover_image_url=cover,
            custom_q=args.query,
            tag_filter=args.tag,
            bulk_prefetch=not args.no_bulk_prefetch,
            dedupe_query_variants=not args.keep_query_variants,
            reencode_all_images=args.reencode_images,
            include_attachments=not args.no_attachments,
        )

        with tqdm(total=100, desc=creator.display_name, unit="%",
                  bar_format="{l_bar}{bar}| {n:.0f}/{total}%") as bar:
            def on_progress(percent: float, message: str):
                if percent >= 0:
                    bar.update(percent - bar.n)
                bar.set_postfix_str(message[:50])

            try:
                result = await generate_epub(creator, selected, options, on_progress,
                                             client=client, sink=FileSink(args.output_dir))
            except KemonoEpubError as e:
                log.error(f"Generation failed: {e}")
                return 1

    print(f"{result.chapter_count} of {result.requested_count} posts included in {result.file_name}")
    return 0


def main():
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
