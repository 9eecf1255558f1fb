"""Name and publisher normalization shared by catalog search and matching.

SCCM display names carry packaging noise ("7-Zip 19.00 (x64 edition)",
"Mozilla Firefox (x64 en-US)", "Microsoft Visual C++ 2015 x86 MUI") that
the Winget catalog does not. Everything here is pure and deterministic.
"""

import re

_PARENTHESIZED = re.compile(r"[\(\[][^\)\]]*[\)\]]")
_VERSION = re.compile(r"\bv?\d+(?:\.\d+)+[a-z]?\b|\bv\d+\b")
_NON_ALNUM = re.compile(r"[^a-z0-9+#]+")
_VERSION_NUMBERS = re.compile(r"\d+(?:\.\d+)*")

NOISE_TOKENS = frozenset(
    {
        "x64",
        "x86",
        "x86_64",
        "amd64",
        "arm64",
        "64bit",
        "32bit",
        "64",
        "32",
        "bit",
        "mui",
        "en",
        "us",
        "english",
        "msi",
        "exe",
        "installer",
        "setup",
    }
)

EDITION_SUFFIXES = frozenset({"edition", "version", "release"})

CORPORATE_SUFFIXES = frozenset(
    {
        "inc",
        "incorporated",
        "llc",
        "ltd",
        "limited",
        "corp",
        "corporation",
        "co",
        "company",
        "gmbh",
        "ag",
        "plc",
        "bv",
        "sa",
        "srl",
        "oy",
        "ab",
        "the",
    }
)


def _words(text: str) -> list[str]:
    return [w for w in _NON_ALNUM.split(text.lower()) if w]


def normalize_name(name: str) -> str:
    """Normalize an application display name for comparison.

    Noise is removed only while something meaningful remains, so a name made
    entirely of noise ("Setup") still normalizes to itself.
    """
    lowered = name.lower()
    stripped = _PARENTHESIZED.sub(" ", lowered)
    stripped = _VERSION.sub(" ", stripped)
    words = [w for w in _words(stripped) if w not in NOISE_TOKENS]
    while words and words[-1] in EDITION_SUFFIXES:
        words.pop()
    if not words:
        words = _words(lowered)
    return " ".join(words)


def normalize_publisher(publisher: str | None) -> str:
    """Normalize a manufacturer/publisher name; empty string when unknown."""
    if not publisher:
        return ""
    words = [w for w in _words(publisher) if w not in CORPORATE_SUFFIXES]
    if not words:
        words = _words(publisher)
    return " ".join(words)


def humanize_package_id(package_id: str) -> str:
    """Turn a Winget id into comparable words: "Google.Chrome" -> "google chrome"."""
    spaced = re.sub(r"(?<=[a-z])(?=[A-Z])", " ", package_id)
    return " ".join(_words(spaced.replace(".", " ")))


def tokenize(text: str) -> list[str]:
    """Split normalized text into unique search tokens, preserving order."""
    seen: dict[str, None] = {}
    for word in _words(text):
        seen.setdefault(word, None)
    return list(seen)


def parse_version(value: str | None) -> tuple[int, ...] | None:
    """Extract the leading dotted number from a version string."""
    if not value:
        return None
    found = _VERSION_NUMBERS.search(value)
    if found is None:
        return None
    return tuple(int(part) for part in found.group(0).split("."))
