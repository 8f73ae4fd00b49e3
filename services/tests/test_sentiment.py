import pytest

from services.presence.contracts import Emotion
from services.presence.core.sentiment import classify, comparative, tokenize


@pytest.mark.parametrize("text, expected", [
    ("I love this, wonderful!", Emotion.HAPPY),
    ("This is terrible and awful", Emotion.SAD),
    ("The sky is blue", Emotion.NEUTRAL),
    ("I am so happy today", Emotion.HAPPY),
    ("I'm glad to hear that", Emotion.HAPPY),
    ("", Emotion.NEUTRAL),
])
def test_classify(text, expected):
    assert classify(text) is expected


def test_tokenize_keeps_apostrophes():
    assert tokenize("I'm glad, really!") == ["i'm", "glad", "really"]


def test_comparative_is_normalized_by_length():
    short = comparative("wonderful")
    long = comparative("wonderful said the man at the station today")
    assert short > long > 0


def test_classify_is_deterministic():
    assert classify("what a wonderful day") is classify("what a wonderful day")
