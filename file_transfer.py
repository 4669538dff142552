# file_transfer.py
import logging
import ntpath
import os
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)


class FileTransferService:
    """
    Side-effect collaborator behind the /file command.

    No bytes move here: a request is validated, recorded under the uploads
    name it would be stored as, and reported back as (success, text) where
    text is the display name on success or the error on failure.
    """

    MAX_RECORDED = 1000

    def __init__(self, uploads_dir="uploads", max_recorded=MAX_RECORDED):
        self.uploads_dir = uploads_dir
        # Most recent requests only; older ones fall off the front.
        self.requests = deque(maxlen=max_recorded)
        self._lock = threading.Lock()

    def display_name(self, path):
        # Accept both separator styles, the path comes from whatever OS the client runs.
        return ntpath.basename(path.strip().rstrip('/\\'))

    def transfer(self, path):
        if not path or not path.strip():
            return False, "No file path given"

        name = self.display_name(path)
        if not name or name in ('.', '..'):
            return False, f"Invalid file path: {path}"

        record = {
            'name': name,
            'path': path.strip(),
            'destination': os.path.join(self.uploads_dir, name),
            'requested_at': time.time(),
        }
        with self._lock:
            self.requests.append(record)
        logger.info(f"Transfer requested for '{record['path']}' -> {record['destination']}")
        return True, name
