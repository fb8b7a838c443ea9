"""Fixed prompt contract for the rolling subject summary."""

from __future__ import annotations

import json
from typing import Dict, List, Sequence

SUMMARY_CHAR_LIMIT = 1000

DEVELOPER_PROMPT = (
    "あなたは大学授業レビューの要約担当です。"
    "過去要約と新規レビュー本文から最新の統合要約を作成してください。"
)

# Style rules are part of the stored summary's contract and are not configurable.
SUMMARY_RULES: tuple[str, ...] = (
    "日本語で書く",
    "1000文字以内（できれば800文字以内）",
    "良い点/悪い点/注意点/おすすめ対象をバランスよく",
    "個人名（教員名など）は可能なら伏せる",
    "箇条書きOK。読みやすさ優先",
)


def build_summary_payload(previous_summary: str, new_reviews: Sequence[str]) -> Dict[str, object]:
    return {
        "previous_summary": (previous_summary or "").strip(),
        "new_reviews": list(new_reviews),
        "rules": list(SUMMARY_RULES),
    }


def build_summary_messages(previous_summary: str, new_reviews: Sequence[str]) -> List[Dict[str, str]]:
    """Messages for the Responses API ``input`` parameter."""

    payload = build_summary_payload(previous_summary, new_reviews)
    return [
        {"role": "developer", "content": DEVELOPER_PROMPT},
        {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
    ]
