"""
@-mention detection.

Only prose counts: fenced code blocks and inline code spans are removed
before the message is scanned, so `@bot` inside backticks never triggers
a reply.
"""

from __future__ import annotations

import re

_FENCED_CODE = re.compile(r"^ {0,3}(`{3,}|~{3,})[^\n]*\n.*?(?:^ {0,3}\1[`~]*[ \t]*$|\Z)", re.MULTILINE | re.DOTALL)
_INDENTED_CODE = re.compile(r"(?:^(?: {4}|\t)[^\n]*(?:\n|$))+", re.MULTILINE)
_INLINE_CODE = re.compile(r"(`+)(?!`).+?(?<!`)\1(?!`)", re.DOTALL)


def _word_splitter(c: str) -> bool:
    return not (c in ":.-_@" or c.isalpha() or c.isdigit())


def _words(text: str) -> list[str]:
    words, current = [], []
    for c in text:
        if _word_splitter(c):
            if current:
                words.append("".join(current))
                current = []
        else:
            current.append(c)
    if current:
        words.append("".join(current))
    return words


def user_is_mentioned(text: str, username: str) -> bool:
    for word in _words(text):
        # :word: is an emoji
        if len(word) > 1 and word[0] == ":" and word[-1] == ":":
            continue
        if word.strip(":.-_") == "@" + username:
            return True
    return False


def strip_code(text: str) -> str:
    text = _FENCED_CODE.sub("\n", text)
    text = _INDENTED_CODE.sub("\n", text)
    return _INLINE_CODE.sub(" ", text)


def user_is_mentioned_markdown(text: str, username: str) -> bool:
    return user_is_mentioned(strip_code(text), username)
