"""
Google Drive storage for letters.

Every user's letters live in their own Drive:

    Letters/
      └── YYYY-MM/
            └── MyLetter_<epoch ms>_<8 hex>.docx   (Google Docs document)

Folder ids are never cached; each save re-resolves the hierarchy by name.
"""

import io
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime

from googleapiclient.discovery import build
from googleapiclient.http import MediaIoBaseUpload

logger = logging.getLogger(__name__)

API_SERVICE_NAME = 'drive'
API_VERSION = 'v3'

LETTERS_FOLDER_NAME = 'Letters'
MIME_FOLDER = 'application/vnd.google-apps.folder'
MIME_DOCUMENT = 'application/vnd.google-apps.document'
MIME_TEXT = 'text/plain'


class DriveError(Exception):
    """A Drive call failed; the message carries the upstream reason."""


def build_drive_service(credentials):
    return build(API_SERVICE_NAME, API_VERSION, credentials=credentials, cache_discovery=False)


def period_key(now):
    return f"{now.year}-{now.month:02d}"


def _oldest(files):
    return sorted(files, key=lambda f: f.get('createdTime') or '')[0]


def _list_all(service, q, fields):
    items = []
    page_token = None
    while True:
        results = service.files().list(
            q=q,
            spaces='drive',
            fields=f"nextPageToken, files({fields})",
            pageToken=page_token,
        ).execute()
        items.extend(results.get('files', []))
        page_token = results.get('nextPageToken')
        if not page_token:
            return items


class FolderLocks:
    """Advisory per-user locks around the folder check-then-create sequence.

    Process-local only; concurrent workers can still create duplicates, which
    the oldest-wins lookup then resolves.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[key]


class FolderProvisioner:
    def __init__(self, service, locks=None):
        self.service = service
        self.locks = locks or FolderLocks()

    def _find_folder(self, name, parent_id):
        q = (
            f"name='{name}' and mimeType='{MIME_FOLDER}' "
            f"and trashed=false and '{parent_id}' in parents"
        )
        folders = _list_all(self.service, q, 'id, name, parents, createdTime')
        if not folders:
            return None
        return _oldest(folders)['id']

    def _create_folder(self, name, parent_id, properties=None):
        metadata = {'name': name, 'mimeType': MIME_FOLDER, 'parents': [parent_id]}
        if properties:
            metadata['properties'] = properties
        folder = self.service.files().create(body=metadata, fields='id, parents').execute()
        return folder['id']

    def find_letters_folder(self):
        try:
            return self._find_folder(LETTERS_FOLDER_NAME, 'root')
        except Exception as exc:
            logger.error("Error looking up '%s' folder: %s", LETTERS_FOLDER_NAME, exc)
            raise DriveError(f"Failed to manage {LETTERS_FOLDER_NAME} folder: {exc}") from exc

    def ensure_letters_folder(self):
        folder_id = self.find_letters_folder()
        if folder_id:
            logger.info("Using existing '%s' folder %s", LETTERS_FOLDER_NAME, folder_id)
            return folder_id

        logger.info("'%s' folder not found, creating one", LETTERS_FOLDER_NAME)
        try:
            folder_id = self._create_folder(
                LETTERS_FOLDER_NAME, 'root', properties={'appCreated': 'true'}
            )
        except Exception as exc:
            logger.error("Error creating '%s' folder: %s", LETTERS_FOLDER_NAME, exc)
            raise DriveError(f"Failed to manage {LETTERS_FOLDER_NAME} folder: {exc}") from exc
        logger.info("'%s' folder created with id %s", LETTERS_FOLDER_NAME, folder_id)
        return folder_id

    def ensure_monthly_folder(self, user_key, now=None):
        """Return the id of the current ``YYYY-MM`` folder, creating the
        hierarchy as needed."""
        month = period_key(now or datetime.now())

        with self.locks.hold(user_key):
            parent_id = self.ensure_letters_folder()
            try:
                folder_id = self._find_folder(month, parent_id)
                if folder_id:
                    logger.info("'%s' subfolder exists with id %s", month, folder_id)
                    return folder_id

                logger.info("'%s' subfolder not found, creating one", month)
                folder_id = self._create_folder(month, parent_id)
            except Exception as exc:
                logger.error("Error fetching or creating monthly subfolder: %s", exc)
                raise DriveError(f"Failed to manage monthly subfolder: {exc}") from exc

        logger.info("'%s' subfolder created with id %s", month, folder_id)
        return folder_id


class LetterStore:
    def __init__(self, service, provisioner=None):
        self.service = service
        self.provisioner = provisioner or FolderProvisioner(service)

    def save_letter(self, content, user_key, now=None):
        now = now or datetime.now()
        folder_id = self.provisioner.ensure_monthly_folder(user_key, now=now)

        metadata = {
            'name': f"MyLetter_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}.docx",
            'mimeType': MIME_DOCUMENT,
            'parents': [folder_id],
        }
        media = MediaIoBaseUpload(io.BytesIO(content.encode('utf-8')), mimetype=MIME_TEXT)
        try:
            file = self.service.files().create(
                body=metadata, media_body=media, fields='id, parents'
            ).execute()
        except Exception as exc:
            logger.error("Error saving letter: %s", exc)
            raise DriveError(str(exc)) from exc

        logger.info("Letter saved with id %s in folder %s", file['id'], folder_id)
        return {'fileId': file['id'], 'folderId': folder_id}

    def list_letters(self):
        """Documents directly in the Letters folder or in one of its monthly
        subfolders, without creating anything."""
        letters_id = self.provisioner.find_letters_folder()
        if not letters_id:
            return []

        try:
            months = _list_all(
                self.service,
                f"'{letters_id}' in parents and mimeType='{MIME_FOLDER}' and trashed=false",
                'id, name',
            )
            parents = [letters_id] + [m['id'] for m in months]
            in_parents = ' or '.join(f"'{p}' in parents" for p in parents)
            documents = _list_all(
                self.service,
                f"({in_parents}) and mimeType='{MIME_DOCUMENT}' and trashed=false",
                'id, name, modifiedTime',
            )
        except Exception as exc:
            logger.error("Error fetching letters: %s", exc)
            raise DriveError(str(exc)) from exc
        return [
            {'id': d['id'], 'name': d.get('name'), 'modifiedTime': d.get('modifiedTime')}
            for d in documents
        ]

    def delete_letter(self, file_id):
        try:
            self.service.files().delete(fileId=file_id).execute()
        except Exception as exc:
            logger.error("Error deleting letter %s: %s", file_id, exc)
            raise DriveError(str(exc)) from exc
        logger.info("Letter %s deleted", file_id)
