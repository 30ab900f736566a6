from datetime import datetime, timezone


def utcnow() -> datetime:
    # stored naive; every timestamp column holds UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)
