"""
Token estimation for conversation turns and summaries.

The estimates only need to be stable and roughly proportional to what an
LLM tokenizer would produce; they drive window trimming, not billing.
"""

import math
import re

# CJK unified ideographs (basic block, extension A, compatibility block)
_CJK_IDEOGRAPH = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff]")
# CJK punctuation and full-width forms
_CJK_PUNCT = re.compile(r"[\u3000-\u303f\uff00-\uffef]")

CJK_IDEOGRAPH_WEIGHT = 1.5
CJK_PUNCT_WEIGHT = 1.0
WHITESPACE_WEIGHT = 0.1
OTHER_WEIGHT = 0.3


def estimate_tokens(text: str) -> int:
    """
    Script-aware token estimate for mixed CJK/Latin text.

    CJK ideographs tokenize finely (~1.5 each), CJK punctuation ~1,
    whitespace ~0.1, everything else ~0.3 (3-4 chars per token).
    """
    if not text:
        return 0
    tokens = 0.0
    for char in text:
        if _CJK_IDEOGRAPH.match(char):
            tokens += CJK_IDEOGRAPH_WEIGHT
        elif _CJK_PUNCT.match(char):
            tokens += CJK_PUNCT_WEIGHT
        elif char.isspace():
            tokens += WHITESPACE_WEIGHT
        else:
            tokens += OTHER_WEIGHT
    # round() first so float noise (e.g. 10 * 0.3 == 3.0000000000000004)
    # does not push an exact count up by one
    return math.ceil(round(tokens, 6))


def estimate_turn_tokens(user_message: str, bot_response: str) -> int:
    """Estimate for one user/bot exchange."""
    return estimate_tokens(user_message) + estimate_tokens(bot_response)


def estimate_summary_tokens(text: str) -> int:
    """Coarse estimate used for summaries: ~4 chars per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)
