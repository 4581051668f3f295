# file: src/webapp_backend/reports_service.py
import csv
import io
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


CSV_HEADERS = [
    "Channel Name",
    "Channel Link",
    "Subscribers",
    "Trust Score",
    "Rating",
    "Bio Consistency",
    "Content Relevance",
    "Engagement Ratio",
    "Scam Indicators",
    "Analysis Date",
]

RATINGS = ("Legit", "Doubtful", "Scam Risk")
TOP_INDICATORS = 5


def _section(result: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = result.get(name)
    return v if isinstance(v, dict) else {}


def _parse_dt(v: Any) -> Optional[datetime]:
    if not v:
        return None
    try:
        dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _trust_score(result: Dict[str, Any]) -> float:
    try:
        return float(_section(result, "verdict").get("trustScore") or 0)
    except (TypeError, ValueError):
        return 0.0


def csv_row(row: Dict[str, Any]) -> List[Any]:
    result = row.get("analysis_result") or {}
    info = row.get("channel_info") or {}
    verdict = _section(result, "verdict")
    profile = _section(result, "profileCheck")
    content = _section(result, "contentCheck")
    engagement = content.get("engagementMetrics") or {}
    indicators = content.get("scamIndicators") or []
    created = _parse_dt(row.get("created_at"))

    return [
        info.get("title") or row.get("channel_name") or "",
        row.get("channel_link") or "",
        info.get("subscribers") or 0,
        verdict.get("trustScore") or 0,
        verdict.get("rating") or "Unknown",
        profile.get("bioConsistency") or "Unknown",
        content.get("relevance") or "Unknown",
        engagement.get("engagementRatio") or "0%",
        "; ".join(str(x) for x in indicators) or "None",
        created.date().isoformat() if created else "",
    ]


def build_csv(rows: Iterable[Dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for row in rows:
        writer.writerow(csv_row(row))
    return buf.getvalue()


def csv_filename(now: Optional[datetime] = None) -> str:
    day = (now or datetime.now(timezone.utc)).date().isoformat()
    return f"telegram-analysis-{day}.csv"


def compute_stats(rows: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)

    distribution = {r: 0 for r in RATINGS}
    indicators: Counter = Counter()
    total_score = 0.0
    this_month = 0

    for row in rows:
        result = row.get("analysis_result") or {}

        rating = _section(result, "verdict").get("rating")
        if rating in distribution:
            distribution[rating] += 1

        total_score += _trust_score(result)

        created = _parse_dt(row.get("created_at"))
        if created and created.year == now.year and created.month == now.month:
            this_month += 1

        for indicator in _section(result, "contentCheck").get("scamIndicators") or []:
            indicators[str(indicator)] += 1

    return {
        "totalAnalyses": len(rows),
        "ratingDistribution": distribution,
        "averageTrustScore": round(total_score / len(rows)) if rows else 0,
        "analysesThisMonth": this_month,
        "topScamIndicators": [
            {"indicator": name, "count": count} for name, count in indicators.most_common(TOP_INDICATORS)
        ],
    }
