import re
import asyncio
import hashlib
from html.entities import codepoint2name
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Comment, Declaration, Doctype, ProcessingInstruction
from bs4.builder import ParserRejectedMarkup
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter
from yarl import URL

from ..models import (
    log, IMAGE_DIR_IN_EPUB, IMAGE_UNAVAILABLE_MARKER,
    SiteProfile, Attachment, AssetDescriptor, NormalizedPost
)
from ..exceptions import KemonoEpubError
from ..utils.naming import sanitize_basename
from .image_processor import ImageEncoder

DISALLOWED_TAGS = [
    'script', 'style', 'noscript', 'iframe', 'object', 'embed', 'applet', 'frame', 'frameset',
    'form', 'input', 'button', 'select', 'textarea', 'link', 'meta', 'base', 'head', 'template',
]
AD_SELECTORS = '.ad-container, .ads, .advertisement, .sponsored, .tracking-pixel, [data-ad-slot]'
SKIPPED_SCHEMES = ('data:', 'javascript:', 'mailto:', 'blob:', 'about:', 'tel:', '#')
LOCAL_IMAGE_PREFIX = f"../{IMAGE_DIR_IN_EPUB}/"

_XML_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_.\-]*$')
_ABSOLUTE_URL = re.compile(r'^[A-Za-z][A-Za-z0-9+.\-]*:')
_INVALID_XML_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]')
_NAMED_CODEPOINTS = frozenset(cp for cp in codepoint2name if cp > 127)


def _xml_numeric_entities(text: str) -> str:
    """Escape for XML, writing every HTML-named character as a numeric reference."""
    text = EntitySubstitution.substitute_xml(_INVALID_XML_CHARS.sub('', text))
    return ''.join(f"&#{ord(ch)};" if ord(ch) in _NAMED_CODEPOINTS else ch for ch in text)


XHTML_FORMATTER = HTMLFormatter(
    entity_substitution=_xml_numeric_entities,
    void_element_close_prefix='/',
    empty_attributes_are_booleans=False,
)


def escaped_text_markup(raw: str) -> str:
    """Fallback for markup that cannot be parsed: plain escaped paragraphs."""
    chunks = [c.strip() for c in re.split(r'\n\s*\n', raw or '') if c.strip()]
    return ''.join(f"<p>{_xml_numeric_entities(c)}</p>" for c in chunks)


class ContentNormalizer:
    """Turn one post's scraped HTML into self-contained XHTML.

    Images are fetched through ``client.fetch_binary`` and encoded with
    ``encoder``. Fetched assets are remembered by dedup key for the lifetime
    of the normalizer, so one instance serves exactly one generation run.
    """

    def __init__(self, client, profile: SiteProfile, encoder: Optional[ImageEncoder] = None,
                 dedupe_query_variants: bool = True, include_attachments: bool = True):
        self.client = client
        self.profile = profile
        self.encoder = encoder or ImageEncoder()
        self.dedupe_query_variants = dedupe_query_variants
        self.include_attachments = include_attachments
        self._cache: Dict[str, Optional[AssetDescriptor]] = {}

    # --- URL handling ---

    def resolve_url(self, src: Optional[str]) -> Optional[str]:
        src = (src or '').strip()
        if not src or src.lower().startswith(SKIPPED_SCHEMES):
            return None
        site = self.profile.site_base_url.rstrip('/')
        if src.startswith('//'):
            url = f"https:{src}"
        elif src.startswith('/data/'):
            url = f"{self.profile.data_base_url.rstrip('/')}{src[len('/data'):]}"
        elif src.startswith('/'):
            url = f"{site}{src}"
        elif _ABSOLUTE_URL.match(src):
            if not src.lower().startswith(('http://', 'https://')):
                return None
            url = src
        else:
            url = f"{site}/{src}"
        try:
            parsed = URL(url)
        except (ValueError, TypeError):
            return None
        if not parsed.host:
            return None
        return str(parsed)

    def dedup_key(self, url: str) -> str:
        parsed = URL(url).with_fragment(None)
        if self.dedupe_query_variants:
            parsed = parsed.with_query(None)
        return str(parsed)

    def attachment_url(self, attachment: Attachment) -> Optional[str]:
        path = attachment.path if attachment.path.startswith('/') else f"/{attachment.path}"
        if path.startswith('/data/'):
            path = path[len('/data'):]
        if attachment.server:
            base = f"{attachment.server.rstrip('/')}/data"
        else:
            base = self.profile.data_base_url.rstrip('/')
        return self.resolve_url(f"{base}{path}")

    @staticmethod
    def archive_path_for(key: str, extension: str) -> str:
        stem = sanitize_basename(PurePosixPath(URL(key).path).stem)[:40] or "image"
        digest = hashlib.sha1(key.encode('utf-8')).hexdigest()[:10]
        return f"{IMAGE_DIR_IN_EPUB}/{stem}_{digest}.{extension}"

    # --- Asset retrieval ---

    async def _fetch_asset(self, key: str) -> Optional[AssetDescriptor]:
        if key in self._cache:
            log.debug(f"Reusing asset for {key}")
            return self._cache[key]
        try:
            data, content_type = await self.client.fetch_binary(key)
            loop = asyncio.get_running_loop()
            encoded = await loop.run_in_executor(None, self.encoder.encode, data, key, content_type)
        except (KemonoEpubError, asyncio.TimeoutError, OSError) as e:
            log.warning(f"Image not available {key}: {e}")
            self._cache[key] = None
            return None

        asset = AssetDescriptor(
            original_url=key,
            archive_path=self.archive_path_for(key, encoded.extension),
            media_type=encoded.media_type,
            payload=encoded.data,
        )
        self._cache[key] = asset
        return asset

    # --- Tree transforms ---

    @staticmethod
    def strip_disallowed(soup: BeautifulSoup) -> None:
        for node in soup.find_all(string=lambda s: isinstance(s, (Comment, Declaration, Doctype, ProcessingInstruction))):
            node.extract()
        for tag in soup.find_all(DISALLOWED_TAGS):
            if not tag.decomposed: tag.decompose()
        for tag in soup.select(AD_SELECTORS):
            if not tag.decomposed: tag.decompose()
        for tag in soup.find_all(['html', 'body']):
            tag.unwrap()

        for tag in soup.find_all(True):
            # Namespaced leftovers from word processors (<o:p>) are not valid XHTML
            if ':' in tag.name or not _XML_NAME.match(tag.name):
                tag.unwrap()
                continue
            for attr in list(tag.attrs):
                value = tag.attrs[attr]
                if attr.lower().startswith('on') or (attr != 'xml:lang' and not _XML_NAME.match(attr)):
                    del tag.attrs[attr]
                elif isinstance(value, str) and value.strip().lower().startswith('javascript:'):
                    del tag.attrs[attr]

    @staticmethod
    def is_tracking_pixel(img) -> bool:
        return str(img.get('width', '')).strip() in ('0', '1') and str(img.get('height', '')).strip() in ('0', '1')

    @staticmethod
    def serialize(soup: BeautifulSoup) -> str:
        return soup.decode(formatter=XHTML_FORMATTER).strip()

    @staticmethod
    def mark_unavailable(img, absolute_url: Optional[str] = None) -> None:
        alt = (img.get('alt') or '').strip()
        if IMAGE_UNAVAILABLE_MARKER not in alt:
            img['alt'] = f"{alt} {IMAGE_UNAVAILABLE_MARKER}".strip()
        if absolute_url:
            img['src'] = absolute_url

    def sanitize_markup(self, raw_html: str) -> str:
        """Escaping/self-closing pass only: no assets are fetched or rewritten."""
        soup = self._parse(raw_html)
        if soup is None:
            return escaped_text_markup(raw_html)
        self.strip_disallowed(soup)
        return self.serialize(soup)

    @staticmethod
    def _parse(raw_html: str) -> Optional[BeautifulSoup]:
        try:
            return BeautifulSoup(raw_html or '', 'html.parser')
        except (ParserRejectedMarkup, AssertionError) as e:
            log.warning(f"Unparseable markup, keeping it as text: {e}")
            return None

    # --- Main entry point ---

    async def normalize(self, post_id: str, raw_html: str, attachments: Sequence[Attachment] = ()) -> NormalizedPost:
        soup = self._parse(raw_html)
        if soup is None:
            return NormalizedPost(safe_markup=escaped_text_markup(raw_html))

        self.strip_disallowed(soup)
        post_assets: Dict[str, AssetDescriptor] = {}

        def keep(asset: AssetDescriptor):
            post_assets.setdefault(asset.archive_path, asset)

        # Inline images
        for img in soup.find_all('img'):
            if self.is_tracking_pixel(img):
                img.decompose()
                continue
            src = img.get('src') or img.get('data-src') or ''
            for attr in ('srcset', 'data-src', 'data-srcset', 'sizes', 'loading'):
                img.attrs.pop(attr, None)
            if src.startswith(LOCAL_IMAGE_PREFIX):
                continue
            url = self.resolve_url(src)
            if not url:
                continue
            asset = await self._fetch_asset(self.dedup_key(url))
            if asset:
                img['src'] = f"../{asset.archive_path}"
                if img.get('alt') is None:
                    img['alt'] = ''
                keep(asset)
            else:
                self.mark_unavailable(img, url)

        # Attachments the caller wants packaged
        attachment_results: List[Tuple[Attachment, str, Optional[AssetDescriptor]]] = []
        if self.include_attachments:
            for att in attachments:
                if not att.is_image:
                    continue
                url = self.attachment_url(att)
                if not url:
                    continue
                key = self.dedup_key(url)
                asset = await self._fetch_asset(key)
                if asset:
                    keep(asset)
                attachment_results.append((att, key, asset))

        referenced = self._rewrite_links(soup, post_assets)
        for img in soup.find_all('img'):
            src = img.get('src')
            if not src: continue
            referenced.add(src)
            resolved = None if src.startswith(LOCAL_IMAGE_PREFIX) else self.resolve_url(src)
            if resolved:
                referenced.add(self.dedup_key(resolved))

        for att, key, asset in attachment_results:
            local = f"../{asset.archive_path}" if asset else None
            if (local and local in referenced) or key in referenced:
                continue
            label = att.name or PurePosixPath(att.path).name
            if asset:
                block = soup.new_tag('div', attrs={'class': 'img-block'})
                block.append(soup.new_tag('img', attrs={'src': local, 'alt': label, 'class': 'epub-image'}))
                caption = soup.new_tag('p', attrs={'class': 'caption'})
                caption.string = label
                block.append(caption)
            else:
                block = soup.new_tag('p', attrs={'class': 'image-unavailable'})
                link = soup.new_tag('a', attrs={'href': key})
                link.string = f"{label} {IMAGE_UNAVAILABLE_MARKER}"
                block.append(link)
            soup.append(block)
            referenced.add(local or key)

        log.debug(f"Post {post_id}: {len(post_assets)} assets")
        return NormalizedPost(safe_markup=self.serialize(soup), assets=list(post_assets.values()))

    def _rewrite_links(self, soup: BeautifulSoup, post_assets: Dict[str, AssetDescriptor]) -> set:
        """Point anchors at packaged images and make every other link absolute."""
        referenced = set()
        for a in soup.find_all('a', href=True):
            href = a['href'].strip()
            if href.startswith(LOCAL_IMAGE_PREFIX):
                referenced.add(href)
                continue
            url = self.resolve_url(href)
            if not url:
                continue
            key = self.dedup_key(url)
            if key not in self._cache:
                a['href'] = url
                continue

            asset = self._cache[key]
            text = a.get_text(strip=True)
            if asset:
                a['href'] = f"../{asset.archive_path}"
                post_assets.setdefault(asset.archive_path, asset)
                referenced.add(a['href'])
                if text.lower() == 'download':
                    a.string = 'View'
                elif not text and a.find('img') is None:
                    a.string = 'View Image'
            else:
                a['href'] = url
                referenced.add(key)
                if IMAGE_UNAVAILABLE_MARKER not in text:
                    a.append(f" {IMAGE_UNAVAILABLE_MARKER}")
        return referenced
