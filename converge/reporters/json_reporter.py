"""
JSON plan / apply report generator.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from converge import __version__
from converge.models.plan import ApplyResult, Plan


def build_report(
    plan: Plan,
    source_path: str,
    result: Optional[ApplyResult] = None,
    outputs: Optional[Dict[str, Any]] = None,
) -> str:
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "converge",
            "version": __version__,
        },
        "plan": plan.to_dict(),
        "unchanged": [str(rid) for rid in plan.unchanged],
    }
    if result is not None:
        report["result"] = result.to_dict()
    if outputs:
        report["outputs"] = outputs
    return json.dumps(report, indent=2, default=str)
