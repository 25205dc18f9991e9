from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

_WHITESPACE = re.compile(r"\s+")

ISSUE_SEVERITIES = ("high", "medium", "low")


def count_words(text: Optional[str]) -> int:
    """中文字数统计：去掉所有空白后的字符数。"""
    if not text:
        return 0
    return len(_WHITESPACE.sub("", text))


@dataclass
class ChapterUnit:
    """
    一章的生成结果（不单独持久化，写回 content store 的 Chapter）。
    """

    chapter_id: int
    order: int
    title: str
    content: str = ""
    summary: str = ""
    characters_consumed: int = 0

    @property
    def word_count(self) -> int:
        return count_words(self.content)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["word_count"] = self.word_count
        return payload


@dataclass
class GenerationSummary:
    total_generated: int = 0
    total_failed: int = 0
    characters_consumed: int = 0
    failed_chapters: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_requested(self) -> int:
        return self.total_generated + self.total_failed

    @property
    def has_failures(self) -> bool:
        return self.total_failed > 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReviewIssue:
    type: str
    severity: str
    description: str
    location: str = ""

    @classmethod
    def from_raw(cls, raw: Any) -> "ReviewIssue":
        if isinstance(raw, str):
            return cls(type="general", severity="low", description=raw)
        raw = raw or {}
        severity = str(raw.get("severity") or "low").lower()
        if severity not in ISSUE_SEVERITIES:
            severity = "low"
        return cls(
            type=str(raw.get("type") or "general"),
            severity=severity,
            description=str(raw.get("description") or ""),
            location=str(raw.get("location") or ""),
        )


@dataclass
class ReviewReport:
    chapter_id: int
    score: float
    issues: List[ReviewIssue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)

    @property
    def needs_optimization(self) -> bool:
        return any(issue.severity in ("high", "medium") for issue in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewReport":
        return cls(
            chapter_id=int(data["chapter_id"]),
            score=float(data.get("score") or 0),
            issues=[ReviewIssue.from_raw(item) for item in data.get("issues") or []],
            suggestions=[str(s) for s in data.get("suggestions") or []],
            strengths=[str(s) for s in data.get("strengths") or []],
        )

    def as_feedback(self) -> str:
        """Render the report as plain feedback text for an optimize prompt."""
        lines = [f"评分：{self.score:g}"]
        if self.issues:
            lines.append("问题：")
            for issue in self.issues:
                where = f"（{issue.location}）" if issue.location else ""
                lines.append(f"- [{issue.severity}] {issue.type}{where}：{issue.description}")
        if self.suggestions:
            lines.append("改进建议：")
            lines.extend(f"- {s}" for s in self.suggestions)
        return "\n".join(lines)
