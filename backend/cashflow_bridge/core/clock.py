from datetime import datetime, timezone


def utc_now() -> datetime:
    """Naive UTC timestamp, matching what DateTime columns round-trip on SQLite."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_now_iso() -> str:
    return utc_now().isoformat(timespec="seconds") + "Z"
