from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def resolve_folder_id(client, folder_uid: str | None) -> int:
    """Map a folder uid to the numeric id of this Grafana instance.

    Numeric ids differ between instances, so files only carry the uid. Some
    API versions still want the id on writes. A uid that matches no folder
    resolves to 0, the General folder.
    """

    if not folder_uid:
        return 0
    for folder in client.list_folders():
        if folder.get("uid") == folder_uid:
            folder_id = folder.get("id")
            logger.debug("Found folder id %s for uid %s (%s)", folder_id, folder_uid, folder.get("title"))
            return int(folder_id or 0)
    logger.warning("Folder %s not found, writing to the General folder instead", folder_uid)
    return 0
