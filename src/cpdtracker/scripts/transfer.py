"""
Export / import the local dataset as a JSON backup file.

Usage:
    python -m cpdtracker.scripts.transfer export backup.json
    python -m cpdtracker.scripts.transfer import backup.json

Import replaces every local asset and subscription with the file contents.
The file is validated first; a malformed file leaves the store untouched.
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import Dict

from cpdtracker.db.store import LocalStore

logger = logging.getLogger(__name__)


def export_data(store: LocalStore, path: Path) -> int:
    """Write the backup file. Returns the number of bytes written."""
    text = store.export_json()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    logger.info("Exported local data to %s", path)
    return len(text.encode("utf-8"))


def import_data(store: LocalStore, path: Path) -> Dict[str, int]:
    """
    Replace local data with a backup file.

    Raises:
        FileNotFoundError: path does not exist.
        ValueError: file is not a valid export document.
    """
    text = Path(path).read_text(encoding="utf-8")
    return store.import_json(text)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Export or import local data")
    parser.add_argument("action", choices=["export", "import"])
    parser.add_argument("file", type=Path, help="Backup JSON file")
    args = parser.parse_args(argv)

    from cpdtracker.config import get_settings
    from cpdtracker.db.engine import open_engine

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    store = LocalStore(open_engine(get_settings().database_url))

    if args.action == "export":
        export_data(store, args.file)
        return 0
    try:
        counts = import_data(store, args.file)
    except (OSError, ValueError) as exc:
        logger.error("Import failed: %s", exc)
        return 1
    logger.info(
        "Imported %d assets and %d subscriptions",
        counts["assets"],
        counts["subscriptions"],
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
