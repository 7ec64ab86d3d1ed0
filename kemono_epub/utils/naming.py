import re
from typing import List, Optional, Sequence

from ..models import PostStub

_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\?%*:|"<>]')
_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')
_NON_TOKEN_CHARS = re.compile(r'[^A-Za-z0-9._-]')
_NUMBER = re.compile(r'\d+\.?\d*')

FILENAME_PATTERNS = (
    "titles_only",
    "creator_titles",
    "creator_numbers",
    "creator_second_numbers",
    "creator_book_chapter_numbers",
)


def sanitize_filename(filename: Optional[str], max_length: int = 200) -> str:
    """Make a user-facing file name safe for every common filesystem."""
    if not filename or not isinstance(filename, str): return ""
    sanitized = _CONTROL_CHARS.sub('', filename)
    sanitized = _UNSAFE_FILENAME_CHARS.sub('_', sanitized)
    sanitized = re.sub(r'__+', '_', sanitized).strip()
    return sanitized[:max_length]


def sanitize_basename(text: Optional[str], max_length: int = 120) -> str:
    """Reduce text to an ASCII token usable as an archive basename and XML id.

    Returns an empty string when nothing usable is left; callers pick a
    fallback name.
    """
    if not text or not isinstance(text, str): return ""
    token = re.sub(r'\s+', '_', text.strip())
    token = _NON_TOKEN_CHARS.sub('_', token)
    token = re.sub(r'_+', '_', token)
    token = token.strip('._-')
    return token[:max_length].rstrip('._-')


class UniqueNameRegistry:
    """Hands out names that never repeat, compared case-insensitively.

    A name that is already taken gets a ``_01``, ``_02``... suffix.
    """

    def __init__(self, reserved: Sequence[str] = ()):
        self._taken = set()
        for name in reserved:
            self._taken.add(name.lower())

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._taken

    def claim(self, base: str) -> str:
        candidate = base
        counter = 0
        while candidate.lower() in self._taken:
            counter += 1
            candidate = f"{base}_{counter:02d}"
        self._taken.add(candidate.lower())
        return candidate


def truncate_title(title: Optional[str], max_length: int = 70) -> str:
    if not title: return "Untitled"
    return f"{title[:max_length]}..." if len(title) > max_length else title


def extract_numbers(text: Optional[str]) -> List[str]:
    if not text: return []
    return _NUMBER.findall(text)


def extract_first_number(text: Optional[str]) -> str:
    numbers = extract_numbers(text)
    return numbers[0] if numbers else ""


def _second_number(title: str) -> str:
    numbers = extract_numbers(title)
    if len(numbers) > 1: return numbers[1]
    return numbers[0] if numbers else ""


def _book_chapter(title: str) -> str:
    numbers = extract_numbers(title)
    if not numbers: return ""
    book = numbers[0]
    chapter = numbers[1] if len(numbers) > 1 else numbers[0]
    return f"B{book}C{chapter}"


def generate_dynamic_filename(creator_name: Optional[str], posts: List[PostStub], pattern: str = "creator_titles") -> str:
    """Suggest an EPUB file name from the creator and the chronologically sorted selection."""
    creator = sanitize_filename(creator_name or "Unknown", 60) or "Unknown"

    def clip(title: str, size: int, fallback: str) -> str:
        return sanitize_filename(title, size) or fallback

    if not posts:
        return f"{creator or 'kemono_ebook'}.epub"

    first_title = posts[0].title or ""
    last_title = posts[-1].title or ""
    single = len(posts) == 1

    if single:
        titles = clip(first_title, 60, "single_post")
    else:
        titles = f"{clip(first_title, 30, 'start')}-{clip(last_title, 30, 'end')}"

    number_fn = {
        "creator_numbers": extract_first_number,
        "creator_second_numbers": _second_number,
        "creator_book_chapter_numbers": _book_chapter,
    }.get(pattern)

    if pattern == "titles_only" or pattern not in FILENAME_PATTERNS:
        base = titles
    elif pattern == "creator_titles" or number_fn is None:
        base = f"{creator}_{titles}"
    else:
        first_num = number_fn(first_title)
        last_num = number_fn(last_title)
        if single and first_num:
            base = f"{creator}_{first_num}"
        elif first_num and last_num:
            base = f"{creator}_{first_num}-{last_num}"
        elif first_num:
            base = f"{creator}_{first_num}"
        else:
            base = f"{creator}_{titles}"

    return f"{base}.epub"


def ensure_epub_filename(file_name: Optional[str], fallback: str) -> str:
    """Sanitize a caller-supplied output name, falling back and adding the extension."""
    name = sanitize_filename(file_name) or sanitize_filename(fallback) or "kemono_ebook"
    if not name.lower().endswith(".epub"):
        name = f"{name[:195]}.epub"
    return name
