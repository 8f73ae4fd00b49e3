"""Text -> Emotion classifier on the AFINN lexicon."""
import re
from functools import lru_cache

from afinn import Afinn

from services.presence.contracts import Emotion

HAPPY_AT = 0.5
SAD_AT = -0.5

# punctuation is dropped, apostrophes stay inside words ("i'm")
_PUNCT_RE = re.compile(r"[.,/#!$%^&*;:{}=_`\"~()?\[\]\-]")


@lru_cache(maxsize=1)
def _lexicon() -> Afinn:
    return Afinn(language="en")


def tokenize(text: str) -> list[str]:
    return _PUNCT_RE.sub(" ", text.lower()).split()


def comparative(text: str) -> float:
    """AFINN score divided by the number of tokens (0 for empty text)."""
    tokens = tokenize(text)
    if not tokens:
        return 0.0
    return _lexicon().score(text) / len(tokens)


def classify(text: str) -> Emotion:
    score = comparative(text)
    if score >= HAPPY_AT:
        return Emotion.HAPPY
    if score <= SAD_AT:
        return Emotion.SAD
    return Emotion.NEUTRAL
