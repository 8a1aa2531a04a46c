import logging


class ShortNameFilter(logging.Filter):
    """Adds `record.shortname`: the last two parts of the logger name below `app` ("rpc-client", "storage-store")."""

    def filter(self, record):
        parts = [p for p in record.name.split(".") if p and p != "app"]
        record.shortname = "-".join(parts[-2:]) or record.name
        return True
