import json
import sys
from datetime import datetime, timezone


def json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, "source": "pos-agent", **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)
