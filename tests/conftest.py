"""Shared test fixtures for letterdrive tests.

- FakeDrive: an in-memory stand-in for the Drive v3 ``files()`` resource
- FakeAuthGateway: skips Google's consent and token endpoints
- app / client: a Flask app wired to both fakes
"""

import json
import re
from types import SimpleNamespace

import httplib2
import pytest
from googleapiclient.errors import HttpError

from letterdrive.auth import AuthError, Principal
from letterdrive.config import Settings
from letterdrive.drive import MIME_FOLDER
from letterdrive.server import create_app


# ─────────────────────────────────────────────────────────────────────────────
# Drive fake
# ─────────────────────────────────────────────────────────────────────────────


class _Request:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class FakeDrive:
    """Understands the subset of Drive query syntax letterdrive sends."""

    def __init__(self, page_size=None):
        self.items = {}
        self.page_size = page_size
        self.fail = {}
        self.calls = []
        self._seq = 0

    # Drive service surface

    def files(self):
        return self

    def list(self, q, fields=None, spaces=None, pageToken=None):
        self.calls.append(('list', q))
        return _Request(lambda: self._list(q, fields, pageToken))

    def create(self, body, media_body=None, fields=None):
        self.calls.append(('create', body))
        return _Request(lambda: self._create(body, media_body))

    def delete(self, fileId):
        self.calls.append(('delete', fileId))
        return _Request(lambda: self._delete(fileId))

    # Helpers

    def add(self, name, mime_type, parent, created_time=None, trashed=False):
        return self._create(
            {'name': name, 'mimeType': mime_type, 'parents': [parent]},
            None, created_time=created_time, trashed=trashed)['id']

    def folders(self, name=None, parent=None):
        return [
            f for f in self.items.values()
            if f['mimeType'] == MIME_FOLDER
            and (name is None or f['name'] == name)
            and (parent is None or parent in f['parents'])
        ]

    def children(self, parent):
        return [f for f in self.items.values() if parent in f['parents']]

    def _check(self, op):
        if op in self.fail:
            raise self.fail[op]

    def _list(self, q, fields, page_token):
        self._check('list')
        name = re.search(r"name='([^']*)'", q)
        mime = re.search(r"mimeType='([^']*)'", q)
        parents = set(re.findall(r"'([^']*)' in parents", q))
        wanted = re.search(r"files\(([^)]*)\)", fields or "")
        keys = [k.strip() for k in wanted.group(1).split(",")] if wanted else None
        matches = [
            {k: v for k, v in f.items() if keys is None or k in keys}
            for f in self.items.values()
            if not f['trashed']
            and (name is None or f['name'] == name.group(1))
            and (mime is None or f['mimeType'] == mime.group(1))
            and (not parents or parents & set(f['parents']))
        ]
        if not self.page_size:
            return {'files': matches}
        start = int(page_token or 0)
        page = {'files': matches[start:start + self.page_size]}
        if start + self.page_size < len(matches):
            page['nextPageToken'] = str(start + self.page_size)
        return page

    def _create(self, body, media_body, created_time=None, trashed=False):
        self._check('create')
        self._seq += 1
        file_id = f"file{self._seq}"
        stamp = created_time or f"2024-01-01T00:00:{self._seq:02d}.000Z"
        self.items[file_id] = {
            'id': file_id,
            'name': body['name'],
            'mimeType': body.get('mimeType', 'text/plain'),
            'parents': list(body.get('parents', ['root'])),
            'properties': body.get('properties', {}),
            'createdTime': stamp,
            'modifiedTime': stamp,
            'trashed': trashed,
            'content': media_body.getbytes(0, media_body.size()) if media_body else None,
        }
        return {'id': file_id, 'parents': self.items[file_id]['parents']}

    def _delete(self, file_id):
        self._check('delete')
        if file_id not in self.items:
            content = json.dumps({'error': {'message': f'File not found: {file_id}.'}}).encode()
            raise HttpError(httplib2.Response({'status': '404', 'reason': 'Not Found'}), content)
        del self.items[file_id]
        return ''


# ─────────────────────────────────────────────────────────────────────────────
# Auth fake
# ─────────────────────────────────────────────────────────────────────────────


class FakeAuthGateway:
    def __init__(self):
        self.principal = None
        self.refreshed_token = None
        self.revoked = []
        self.revoke_error = None
        self.exchanged = []

    def authorization_url(self):
        return 'https://accounts.google.com/o/oauth2/auth?state=state-123', 'state-123'

    def exchange(self, authorization_response, state):
        self.exchanged.append((authorization_response, state))
        if self.principal is None:
            raise AuthError('invalid_grant')
        return self.principal

    def credentials_for(self, principal):
        return SimpleNamespace(token=self.refreshed_token or principal.accessToken)

    def revoke(self, token):
        if self.revoke_error:
            raise self.revoke_error
        self.revoked.append(token)
        return True


# ─────────────────────────────────────────────────────────────────────────────
# App fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        session_cache_dir=str(tmp_path / 'sessions'),
        google_client_id='client-id',
        google_client_secret='client-secret',
        callback_url='http://localhost:5000/auth/google/callback',
        session_secret='test-secret',
        admin_email_suffix='@admin.com',
        allowed_origin='http://localhost:3000',
    )


@pytest.fixture
def fake_drive():
    return FakeDrive()


@pytest.fixture
def fake_auth():
    return FakeAuthGateway()


@pytest.fixture
def app(settings, fake_auth, fake_drive):
    app = create_app(settings, auth_gateway=fake_auth, drive_factory=lambda credentials: fake_drive)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    """Put a principal in the client's session, bypassing OAuth."""

    def _login(email='a@co.com', role='user', access_token='token-abc', display_name='Ada'):
        principal = Principal(displayName=display_name, email=email, role=role, accessToken=access_token)
        with client.session_transaction() as sess:
            sess['principal'] = principal.model_dump()
        return principal

    return _login
