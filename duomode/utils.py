"""Small helpers shared across duomode."""

import os
from pathlib import Path


def get_data_home() -> Path:
    """Directory for local state (embedded database, logs).

    ``DUOMODE_DATA_DIR`` overrides the default of ``~/.duomode``.
    """
    override = os.environ.get("DUOMODE_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".duomode"
