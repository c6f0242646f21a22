"""
Query normalization and release matching.

Three normalization modes are used:
- canonical: lowercase, runs of whitespace and "+" collapsed to one space;
  the registry form and the identity behind every per-query key
- storage keys: the canonical form with spaces written as "+"
  (query:<key>, lastSeen:<key>)
- matching: lowercase, ".", "-", "_" and whitespace collapsed to one space

Matching is a cheap, conjunctive, order-insensitive substring test: every
query word of 3+ characters must appear somewhere in the release name.
"""
import re

MIN_WORD_LENGTH = 3
# Words this long may match as substrings of each other in similarity checks
MIN_FUZZY_WORD_LENGTH = 5
SIMILARITY_THRESHOLD = 0.6

_QUERY_SEPARATORS = re.compile(r"[\s+]+")
_SEPARATORS = re.compile(r"[.\-_\s]+")


def canonical_query(query: str) -> str:
    """
    Lowercased query with single spaces; the form kept in the registry.

    "+" counts as a space so that "foo+bar" and "foo bar" are one query,
    exactly as their shared storage key says.
    """
    return _QUERY_SEPARATORS.sub(" ", query.lower()).strip()


def storage_key(query: str) -> str:
    return canonical_query(query).replace(" ", "+")


def normalize_match(text: str) -> str:
    return _SEPARATORS.sub(" ", text.lower()).strip()


def query_words(text: str) -> list[str]:
    """Matching-mode words of at least MIN_WORD_LENGTH characters, in order."""
    return [w for w in normalize_match(text).split(" ") if len(w) >= MIN_WORD_LENGTH]


def matches(query: str, release_name: str) -> bool:
    words = query_words(query)
    if not words:
        return False
    name = normalize_match(release_name)
    return all(word in name for word in words)


def _words_overlap(a: str, b: str) -> bool:
    if a == b:
        return True
    if len(a) >= MIN_FUZZY_WORD_LENGTH and len(b) >= MIN_FUZZY_WORD_LENGTH:
        return a in b or b in a
    return False


def similarity_score(query: str, existing: str) -> float:
    """
    Overlap between two queries' word sets:
    |common| / min(|query words|, |existing words|), 0.0 if either is empty.

    A query word is common when some existing word is identical to it, or
    both are 5+ characters and one contains the other.
    """
    new_words = set(query_words(query))
    old_words = set(query_words(existing))
    if not new_words or not old_words:
        return 0.0
    common = sum(1 for w in new_words if any(_words_overlap(w, o) for o in old_words))
    return min(1.0, common / min(len(new_words), len(old_words)))


def is_similar(query: str, existing: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    return similarity_score(query, existing) >= threshold
