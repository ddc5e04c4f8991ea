"""Term tokenisation shared by edge inference and concept extraction."""
import re
from typing import List, Set

STOPWORDS = {
    "a", "about", "above", "after", "again", "against", "all", "also", "am", "an", "and",
    "any", "are", "aren't", "as", "at", "be", "because", "been", "before", "being", "below",
    "between", "both", "but", "by", "can", "could", "did", "do", "does", "doing", "don't",
    "down", "during", "each", "even", "few", "for", "from", "further", "get", "got", "had",
    "has", "have", "having", "he", "her", "here", "hers", "herself", "him", "himself", "his",
    "how", "i", "if", "in", "into", "is", "isn't", "it", "it's", "its", "itself", "just",
    "let", "like", "made", "make", "many", "me", "might", "more", "most", "much", "must",
    "my", "myself", "no", "nor", "not", "now", "of", "off", "ok", "okay", "on", "once",
    "one", "only", "or", "other", "our", "ours", "ourselves", "out", "over", "own", "really",
    "same", "see", "she", "should", "so", "some", "still", "such", "sure", "than", "thank",
    "thanks", "that", "that's", "the", "their", "theirs", "them", "themselves", "then",
    "there", "these", "they", "thing", "things", "this", "those", "through", "to", "too",
    "under", "until", "up", "us", "use", "very", "want", "was", "way", "we", "well", "were",
    "what", "when", "where", "which", "while", "who", "whom", "why", "will", "with", "would",
    "yeah", "yes", "you", "your", "yours", "yourself", "yourselves",
}

_TERM_PATTERN = re.compile(r"[a-z][a-z0-9_\-]{2,}")


def tokens(text: str) -> List[str]:
    """Lower-cased significant tokens in text order (repeats kept)."""
    out: List[str] = []
    for word in _TERM_PATTERN.findall((text or "").lower()):
        word = word.strip("-_")
        if len(word) < 3 or word in STOPWORDS:
            continue
        out.append(word)
    return out


def term_set(text: str) -> Set[str]:
    return set(tokens(text))
