from __future__ import annotations

import json

from insight_pipeline.analysis.base import AnalysisResult
from insight_pipeline.models import Event

SYSTEM_PROMPT = (
    "You are a behavioral analytics expert analyzing e-commerce user events."
)

ANALYSIS_INSTRUCTIONS = """\
You are analyzing user behavior on an e-commerce website.
Below is a batch of {count} user events from one time window, oldest first.

## Events

{events}

Analyze these events and respond with a JSON object containing:

- **summary**: a concise 1-2 sentence summary of user behavior patterns.
- **confidence**: how confident you are in the summary, from 0 to 1.
- **patterns**: a list of short pattern names you observed.

Respond with ONLY valid JSON matching the schema, no markdown and no extra text.
"""


def _event_payload(event: Event) -> dict:
    return {
        "type": event.event_type,
        "user": event.user_id,
        "timestamp": event.timestamp.isoformat(),
        "metadata": event.metadata,
    }


def build_analysis_messages(events: list[Event]) -> list[dict[str, str]]:
    """Build chat messages asking the model to analyse *events*."""
    rendered = json.dumps([_event_payload(e) for e in events], indent=2, default=str)
    prompt = ANALYSIS_INSTRUCTIONS.format(count=len(events), events=rendered)
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def build_response_format() -> dict:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "response",
            "schema": AnalysisResult.json_schema(),
        },
    }
