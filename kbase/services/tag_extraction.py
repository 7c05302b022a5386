# @TEST tests/test_tag_extraction.py

"""Rule-based tag and category extraction for notes and questions.

No model calls: categories come from a keyword table, extra tags from
words repeated within the text.
"""

from __future__ import annotations

import re
from collections import Counter

# category -> trigger substrings (Russian and English)
CATEGORY_PATTERNS: dict[str, tuple[str, ...]] = {
    "work": ("встреча", "проект", "задача", "работа", "meeting", "project", "task"),
    "personal": ("личное", "семья", "друзья", "хобби", "personal", "family"),
    "finance": ("деньги", "бюджет", "расходы", "доходы", "money", "budget"),
    "tech": ("код", "программирование", "разработка", "kotlin", "api", "база данных"),
    "health": ("здоровье", "спорт", "врач", "лекарство", "health", "doctor"),
}

# Repeated words shorter than or equal to this are not tags
MIN_TAG_WORD_LENGTH = 3
MAX_WORD_TAGS = 3

_WHITESPACE_RE = re.compile(r"\s+")


class TagExtractionService:
    """Extract ``(tags, category)`` from free text."""

    def extract_tags_and_category(self, content: str) -> tuple[list[str], str | None]:
        """Return the tags and the primary category of *content*.

        Every matching category becomes a tag; the first match (in
        ``CATEGORY_PATTERNS`` order) is the category. Up to three words
        longer than three characters that occur more than once are added
        as tags.
        """
        content_lower = content.lower()
        tags: list[str] = []
        category: str | None = None

        for name, patterns in CATEGORY_PATTERNS.items():
            if any(pattern in content_lower for pattern in patterns):
                if category is None:
                    category = name
                tags.append(name)

        words = [
            word.lower().strip(",.!?")
            for word in _WHITESPACE_RE.split(content)
            if len(word) > MIN_TAG_WORD_LENGTH
        ]
        repeated = [word for word, count in Counter(words).items() if word and count > 1][:MAX_WORD_TAGS]
        for word in repeated:
            if word not in tags:
                tags.append(word)

        return tags, category
