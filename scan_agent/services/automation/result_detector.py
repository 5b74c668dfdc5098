"""
Result detection logic

Matches folder listing rows to a job's document and extracts the similarity
and AI percentages from the row text.
"""

import re

from ...models.job import ResultScores

PERCENT_PATTERN = re.compile(r"(\d+)\s*%")
DUPLICATE_SUFFIX_PATTERN = re.compile(r"\s*\(\d+\)$")
WHITESPACE_PATTERN = re.compile(r"\s+")
EXTENSION_PATTERN = re.compile(r"\.[a-z0-9]{1,5}$")


class ResultDetector:
    """Detects result readiness and scores from listing row text"""

    # Placeholders shown while the host is still scoring a document
    IN_PROGRESS_MARKERS = [
        "processing",
        "pending",
        "in progress",
        "*%",
        "--%",
    ]

    @staticmethod
    def normalize_filename(name: str) -> str:
        """
        Reduce a file name to a comparable form

        Lower-cases, strips the extension and a trailing ``(n)`` duplicate
        counter, and collapses whitespace.
        """
        text = WHITESPACE_PATTERN.sub(" ", (name or "").strip().lower())
        text = EXTENSION_PATTERN.sub("", text)
        text = DUPLICATE_SUFFIX_PATTERN.sub("", text)
        return text.strip()

    @staticmethod
    def row_matches(row_text: str, display_name: str) -> bool:
        target = ResultDetector.normalize_filename(display_name)
        if not target:
            return False
        haystack = WHITESPACE_PATTERN.sub(" ", (row_text or "").lower())
        return target in haystack

    @staticmethod
    def parse_scores(row_text: str) -> ResultScores:
        """
        Extract percentages from a result row

        The first percentage is the similarity score, the second the AI score.
        A row is ready once a similarity score is present and no in-progress
        marker remains.
        """
        text = (row_text or "").lower()
        values = [int(match) for match in PERCENT_PATTERN.findall(text)]

        similarity = values[0] if values else None
        ai = values[1] if len(values) > 1 else None
        in_progress = any(marker in text for marker in ResultDetector.IN_PROGRESS_MARKERS)

        return ResultScores(
            similarity=similarity,
            ai=ai,
            ready=similarity is not None and not in_progress,
        )


normalize_filename = ResultDetector.normalize_filename
row_matches = ResultDetector.row_matches
parse_scores = ResultDetector.parse_scores
