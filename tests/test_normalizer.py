import pytest
from bs4 import BeautifulSoup
from lxml import etree

from kemono_epub.models import Attachment, SiteProfile, IMAGE_UNAVAILABLE_MARKER
from kemono_epub.core.normalizer import ContentNormalizer, escaped_text_markup
from conftest import FakeClient, make_image, oversized_bmp

IMG = "https://kemono.cr/data/aa/bb/picture.png"


def normalizer_for(images=None, **kwargs):
    client = FakeClient(images=images)
    return client, ContentNormalizer(client, client.profile, **kwargs)

def well_formed(markup):
    return etree.fromstring(f"<div>{markup}</div>".encode("utf-8"))


def test_resolve_url_rules(profile):
    n = ContentNormalizer(FakeClient(), profile)
    assert n.resolve_url("//cdn.example.com/a.png") == "https://cdn.example.com/a.png"
    assert n.resolve_url("/data/aa/bb/c.png") == "https://kemono.cr/data/aa/bb/c.png"
    assert n.resolve_url("/thumbnail/data/x.jpg") == "https://kemono.cr/thumbnail/data/x.jpg"
    assert n.resolve_url("images/x.jpg") == "https://kemono.cr/images/x.jpg"
    assert n.resolve_url("https://other.example/x.gif") == "https://other.example/x.gif"
    assert n.resolve_url("javascript:alert(1)") is None
    assert n.resolve_url("data:image/png;base64,AAAA") is None
    assert n.resolve_url("ftp://files.example/x.png") is None
    assert n.resolve_url("") is None

def test_resolve_url_uses_profile_data_base():
    mirror = SiteProfile(name="mirror", site_base_url="https://m.example", data_base_url="https://files.m.example/data")
    n = ContentNormalizer(FakeClient(profile=mirror), mirror)
    assert n.resolve_url("/data/aa/x.png") == "https://files.m.example/data/aa/x.png"
    assert n.resolve_url("/aa/x.png") == "https://m.example/aa/x.png"

def test_dedup_key_query_handling(profile):
    url = "https://kemono.cr/data/x.png?v=2#frag"
    assert ContentNormalizer(FakeClient(), profile).dedup_key(url) == "https://kemono.cr/data/x.png"
    keep_query = ContentNormalizer(FakeClient(), profile, dedupe_query_variants=False)
    assert keep_query.dedup_key(url) == "https://kemono.cr/data/x.png?v=2"

def test_attachment_url_prefers_server(profile):
    n = ContentNormalizer(FakeClient(), profile)
    assert n.attachment_url(Attachment(path="/aa/b.png", server="https://n1.kemono.cr")) == "https://n1.kemono.cr/data/aa/b.png"
    assert n.attachment_url(Attachment(path="/aa/b.png")) == "https://kemono.cr/data/aa/b.png"
    assert n.attachment_url(Attachment(path="/data/aa/b.png")) == "https://kemono.cr/data/aa/b.png"

def test_sanitize_strips_disallowed_and_writes_xhtml(profile):
    n = ContentNormalizer(FakeClient(), profile)
    raw = ('<p onclick="x()">Hi&nbsp;there<br>line &copy; <b>bold</b></p>'
           '<script>alert(1)</script><div class="ad-container">buy</div>'
           '<o:p>word</o:p><a href="javascript:void(0)">js</a><hr>')
    out = n.sanitize_markup(raw)
    assert "<script" not in out
    assert "buy" not in out
    assert "onclick" not in out
    assert "javascript:" not in out
    assert "<br/>" in out
    assert "<hr/>" in out
    assert "&#160;" in out
    assert "&#169;" in out
    assert "<o:p>" not in out and "word" in out
    well_formed(out)

def test_sanitize_is_idempotent(profile):
    n = ContentNormalizer(FakeClient(), profile)
    raw = '<p>a &lt; b &amp; c&nbsp;&mdash; d<br><img src="../Images/x.png" alt=""></p><ul><li>one<li>two</ul>'
    once = n.sanitize_markup(raw)
    assert n.sanitize_markup(once) == once

def test_escaped_text_fallback():
    assert escaped_text_markup("a < b\n\nsecond") == "<p>a &lt; b</p><p>second</p>"

@pytest.mark.asyncio
async def test_identical_urls_fetch_once(png_bytes):
    client, n = normalizer_for({IMG: (png_bytes, "image/png")})
    raw = (f'<p><img src="{IMG}"></p><p><img src="/data/aa/bb/picture.png?cache=1" alt="again"></p>'
           f'<p><img src="{IMG}#x"></p>')
    result = await n.normalize("1", raw)

    assert client.binary_calls == [IMG]
    assert len(result.assets) == 1
    local = f"../{result.assets[0].archive_path}"
    soup = BeautifulSoup(result.safe_markup, "html.parser")
    assert [img["src"] for img in soup.find_all("img")] == [local, local, local]
    assert result.assets[0].archive_path.startswith("Images/picture_")
    well_formed(result.safe_markup)

@pytest.mark.asyncio
async def test_query_variants_kept_apart_when_configured(png_bytes):
    images = {f"{IMG}?v=1": (png_bytes, "image/png"), f"{IMG}?v=2": (png_bytes, "image/png")}
    client, n = normalizer_for(images, dedupe_query_variants=False)
    result = await n.normalize("1", f'<img src="{IMG}?v=1"><img src="{IMG}?v=2">')
    assert len(client.binary_calls) == 2
    assert len({a.archive_path for a in result.assets}) == 2

@pytest.mark.asyncio
async def test_failed_image_is_annotated_and_skipped(png_bytes):
    good = "https://kemono.cr/data/good.png"
    client, n = normalizer_for({good: (png_bytes, "image/png")})
    result = await n.normalize("1", f'<img src="/data/missing.png" alt="Map"><img src="{good}">')

    soup = BeautifulSoup(result.safe_markup, "html.parser")
    missing, ok = soup.find_all("img")
    assert missing["alt"] == f"Map {IMAGE_UNAVAILABLE_MARKER}"
    assert missing["src"] == "https://kemono.cr/data/missing.png"
    assert ok["src"].startswith("../Images/good_")
    assert [a.original_url for a in result.assets] == [good]

@pytest.mark.asyncio
async def test_undecodable_image_counts_as_failure():
    client, n = normalizer_for({IMG: (b"garbage", "image/webp")})
    result = await n.normalize("1", f'<img src="{IMG}">')
    assert result.assets == []
    assert IMAGE_UNAVAILABLE_MARKER in result.safe_markup

@pytest.mark.asyncio
async def test_oversized_image_does_not_affect_other_images(png_bytes):
    bad = "https://kemono.cr/data/bad.bmp"
    good = "https://kemono.cr/data/good.png"
    client, n = normalizer_for({bad: (oversized_bmp(), "image/bmp"), good: (png_bytes, "image/png")})
    result = await n.normalize("1", f'<img src="{bad}"><img src="{good}">')
    assert [a.original_url for a in result.assets] == [good]
    assert IMAGE_UNAVAILABLE_MARKER in result.safe_markup

@pytest.mark.asyncio
async def test_tracking_pixels_and_srcset_removed(png_bytes):
    client, n = normalizer_for({IMG: (png_bytes, "image/png")})
    raw = f'<img src="https://t.example/p.gif" width="1" height="1"><img src="{IMG}" srcset="{IMG} 2x" loading="lazy">'
    result = await n.normalize("1", raw)
    assert "t.example" not in result.safe_markup
    assert "srcset" not in result.safe_markup
    assert client.binary_calls == [IMG]

@pytest.mark.asyncio
async def test_unreferenced_image_attachments_are_appended(png_bytes):
    att_url = "https://n2.kemono.cr/data/cc/dd/full.jpg"
    client, n = normalizer_for({att_url: (make_image("JPEG"), "image/jpeg")})
    attachments = [
        Attachment(path="/cc/dd/full.jpg", name="Full page.jpg", server="https://n2.kemono.cr"),
        Attachment(path="/ee/notes.zip", name="notes.zip"),
    ]
    result = await n.normalize("1", "<p>Text</p>", attachments)

    soup = BeautifulSoup(result.safe_markup, "html.parser")
    block = soup.find("div", class_="img-block")
    assert block.img["src"] == f"../{result.assets[0].archive_path}"
    assert block.find("p", class_="caption").get_text() == "Full page.jpg"
    assert result.assets[0].archive_path.endswith(".jpg")
    assert client.binary_calls == [att_url]

@pytest.mark.asyncio
async def test_linked_attachment_rewritten_in_place(png_bytes):
    client, n = normalizer_for({IMG: (png_bytes, "image/png")})
    raw = '<p><a href="/data/aa/bb/picture.png">Download</a> <a href="/posts/2">next</a></p>'
    result = await n.normalize("1", raw, [Attachment(path="/aa/bb/picture.png", name="picture.png")])

    soup = BeautifulSoup(result.safe_markup, "html.parser")
    image_link, other = soup.find_all("a")
    assert image_link["href"] == f"../{result.assets[0].archive_path}"
    assert image_link.get_text() == "View"
    assert other["href"] == "https://kemono.cr/posts/2"
    assert soup.find("div", class_="img-block") is None

@pytest.mark.asyncio
async def test_failed_attachment_gets_placeholder_once():
    client, n = normalizer_for()
    att = Attachment(path="/zz/lost.png", name="lost.png")
    result = await n.normalize("1", "<p>x</p>", [att])
    assert result.safe_markup.count(IMAGE_UNAVAILABLE_MARKER) == 1
    assert 'class="image-unavailable"' in result.safe_markup

    again = await n.normalize("1", result.safe_markup, [att])
    assert again.safe_markup.count(IMAGE_UNAVAILABLE_MARKER) == 1
    assert client.binary_calls == ["https://kemono.cr/data/zz/lost.png"]

@pytest.mark.asyncio
async def test_attachments_can_be_disabled(png_bytes):
    client, n = normalizer_for({IMG: (png_bytes, "image/png")}, include_attachments=False)
    result = await n.normalize("1", "<p>x</p>", [Attachment(path="/aa/bb/picture.png")])
    assert result.assets == []
    assert client.binary_calls == []

@pytest.mark.asyncio
async def test_shared_image_across_posts_fetched_once(png_bytes):
    client, n = normalizer_for({IMG: (png_bytes, "image/png")})
    first = await n.normalize("1", f'<img src="{IMG}">')
    second = await n.normalize("3", f'<p><img src="{IMG}"></p>')
    assert client.binary_calls == [IMG]
    assert first.assets[0].archive_path == second.assets[0].archive_path
