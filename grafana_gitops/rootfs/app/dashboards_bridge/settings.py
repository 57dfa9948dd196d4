from __future__ import annotations

import os
from pathlib import Path

CONFIG_PATH = Path(os.environ.get("GRAFANA_GITOPS_CONFIG", "config.yaml"))
API_KEY_ENV = "GRAFANA_API_KEY"
DASHBOARDS_DIR = "dashboards"
FOLDERS_DIR = "folders"
LIBRARIES_DIR = "libraries"
ENTITY_DIRS = (DASHBOARDS_DIR, FOLDERS_DIR, LIBRARIES_DIR)
DEFS_FILE_SUFFIX = "versions-metadata.json"
FOLDER_UID_KEY = "__folderUID"
LIBRARY_PAGE_SIZE = 100
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 30
