# mediaguard/services/explanation.py
from typing import List, Optional

from mediaguard.core.schemas import ScanStatus, Verdict


def generate_explanation(
    verdict: Verdict,
    confidence: float,
    reasons: List[str],
    url: Optional[str] = None,
    status: ScanStatus = "complete",
) -> str:
    """
    One-paragraph summary of a scan for display next to the verdict.
    """
    url_part = f" for {url}" if url else ""
    pct = int(round(confidence * 100))
    top = reasons[0] if reasons else None

    if status == "timeout":
        return (
            f"The scan{url_part} ran out of time before every check finished; "
            f"this verdict is provisional ({pct}% confidence)."
        )
    if status == "error":
        return f"The scan{url_part} could not be completed. Treat this media with caution."

    if verdict == "danger":
        detail = f" Main finding: {top}." if top else ""
        return (
            f"The media{url_part} shows strong signs of manipulation or synthetic origin "
            f"({pct}% confidence).{detail}"
        )
    elif verdict == "safe":
        detail = f" {top}." if top else ""
        return (
            f"No red flags were found{url_part}; the available signals look consistent "
            f"with authentic media ({pct}% confidence).{detail}"
        )
    else:
        detail = f" Main finding: {top}." if top else ""
        return (
            f"The analysis{url_part} is inconclusive. Some signals are suspicious "
            f"but not decisive ({pct}% confidence).{detail}"
        )
