import functools
import json
import sys
from copy import deepcopy
from datetime import datetime, timezone

import psycopg


def json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def degrade_on_db_error(event: str, default):
    """
    Mark a secondary read (dashboard widgets, stats cards, report panels) as
    degradable: a database error is logged as `db.degraded` and the caller gets
    a zero-valued copy of `default` instead of an error response.

    Data errors (bad input such as a malformed UUID filter) still propagate
    so main.py answers them with a 400.

    Core reads and every write must NOT use this; their errors propagate to the
    exception handlers in main.py.
    """

    def _wrap(fn):
        @functools.wraps(fn)
        def _inner(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except psycopg.DataError:
                # A malformed id or number in the request, not an outage.
                raise
            except psycopg.Error as exc:
                json_log("warning", "db.degraded", source=event, error=str(exc))
                return deepcopy(default)

        return _inner

    return _wrap
