import json
import sys
from datetime import datetime, timezone


def json_log(level: str, event: str, **fields):
    # One JSON object per line on stderr; container log shippers pick it up as-is.
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)
