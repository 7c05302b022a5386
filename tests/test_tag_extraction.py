# @TEST tests/test_tag_extraction.py

"""Tests for rule-based tag and category extraction."""

from __future__ import annotations

from kbase.services.tag_extraction import TagExtractionService


class TestTagExtraction:
    def setup_method(self):
        self.service = TagExtractionService()

    def test_category_from_keyword(self):
        tags, category = self.service.extract_tags_and_category("Meeting with the design team at 3pm")
        assert category == "work"
        assert "work" in tags

    def test_first_category_wins_but_all_are_tags(self):
        tags, category = self.service.extract_tags_and_category("Project budget review")
        assert category == "work"
        assert tags[:2] == ["work", "finance"]

    def test_russian_patterns(self):
        _, category = self.service.extract_tags_and_category("Записаться к врачу в четверг")
        assert category == "health"

    def test_no_category(self):
        tags, category = self.service.extract_tags_and_category("Buy milk")
        assert category is None
        assert tags == []

    def test_repeated_words_become_tags(self):
        tags, _ = self.service.extract_tags_and_category("Garden plan. Water the garden, then the roses. Roses need water")
        assert tags == ["garden", "water", "roses"]

    def test_at_most_three_word_tags(self):
        text = "alpha alpha bravo bravo charlie charlie delta delta"
        tags, _ = self.service.extract_tags_and_category(text)
        assert tags == ["alpha", "bravo", "charlie"]

    def test_short_words_ignored(self):
        tags, _ = self.service.extract_tags_and_category("the cat and the cat")
        assert tags == []
