# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Synology Photos client.
Lists photos by album, tag, shared link or personal-space album (person,
concept, geocoding) and downloads thumbnails, originals and EXIF data.
"""

import json
import time
from typing import Any, Dict, List, Optional

import requests

from .config import SynologyConfig
from .logs import ComponentLogger, get_component_logger
from .provider import AuthenticationError, PhotoItem, PhotoProvider, dedupe_photos

AUTH_API_PATH = '/webapi/auth.cgi'
PHOTOS_API_PATH = '/webapi/entry.cgi'

ITEM_ADDITIONAL = '["thumbnail","resolution","orientation","video_convert","video_meta","provider_user_id"]'

PHOTO_TYPES = ('photo', 'live_photo')

# API error codes
ERROR_LIMIT_CONDITION = 120
ERROR_NOT_FOUND = 609
SESSION_ERROR_CODES = {106, 107, 119}  # timeout, interrupted, SID not found
REDUCED_LIMIT = 500

# Downloads smaller than this are error payloads, not images
MIN_IMAGE_BYTES = 100

PERSONAL_SPACE = 0
SHARED_SPACE = 1


class SynologyPhotosClient(PhotoProvider):
    """
    Client for the Synology Photos web API.

    Selection priority: personal-space albums (persons, concepts,
    geocoding) > tags > shared link > named album > all photos.
    """

    def __init__(self, config: SynologyConfig, logger: Optional[ComponentLogger] = None):
        """
        Initialize the client.

        Args:
            config: Synology connection and selection settings.
            logger: Optional logger; defaults to a prefixed module logger.
        """
        self.config = config
        self.base_url = config.url.rstrip('/')
        self.use_shared_album = bool(config.share_token)
        self._logger = logger or get_component_logger(__name__, "SynologyPhotos")

        self.sid: Optional[str] = None        # FileStation session, used for browsing
        self.photo_sid: Optional[str] = None  # PhotoStation session, preferred for downloads
        self.folder_ids: List[int] = []
        self.tag_ids: Dict[int, List[int]] = {}  # space id -> tag ids
        self._authenticated = False

    @property
    def has_personal_space_albums(self) -> bool:
        return bool(self.config.person_ids or self.config.concept_ids or self.config.geocoding_ids)

    # -- HTTP helpers --------------------------------------------------------

    def _get(self, path: str, params: Dict[str, Any], timeout: int) -> Optional[Dict[str, Any]]:
        """
        Call a Synology JSON endpoint.

        Returns:
            The decoded response, or None on transport or decoding errors.

        Raises:
            AuthenticationError: The session is no longer valid.
        """
        try:
            response = requests.get(
                f"{self.base_url}{path}",
                params=params,
                timeout=timeout,
                verify=self.config.verify_ssl
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            self._logger.error(f"Request to {params.get('api')} failed: {e}")
            return None
        except ValueError as e:
            self._logger.error(f"Invalid JSON from {params.get('api')}: {e}")
            return None

        if not isinstance(data, dict):
            self._logger.error(f"Unexpected response from {params.get('api')}: {data!r}")
            return None

        if not data.get('success'):
            code = (data.get('error') or {}).get('code')
            if code in SESSION_ERROR_CODES and not self.use_shared_album:
                self._authenticated = False
                raise AuthenticationError(f"Synology session rejected (error {code})")
        return data

    def _auth_params(self, params: Dict[str, Any], space_id: Optional[int] = None) -> Dict[str, Any]:
        if self.use_shared_album:
            params['passphrase'] = self.config.share_token
        else:
            params['_sid'] = self.sid
            if space_id == PERSONAL_SPACE:
                params['space_id'] = PERSONAL_SPACE
        return params

    # -- Session -------------------------------------------------------------

    def _login(self, session: str) -> Optional[str]:
        data = self._get(AUTH_API_PATH, {
            'api': 'SYNO.API.Auth',
            'version': '3',
            'method': 'login',
            'account': self.config.account,
            'passwd': self.config.password,
            'session': session,
            'format': 'sid',
        }, timeout=10)

        if data and data.get('success'):
            return (data.get('data') or {}).get('sid')

        self._logger.debug(f"{session} authentication failed: {json.dumps(data)}")
        return None

    def authenticate(self) -> bool:
        """
        Log in and resolve the configured album or tags.

        Returns:
            False when no session could be opened or the configured
            album/tags do not exist.
        """
        if self.use_shared_album:
            self._logger.info("Using shared album token, skipping authentication")
            self._authenticated = True
        else:
            self.sid = self._login('FileStation')
            # PhotoStation is optional, FileStation is enough for browsing
            self.photo_sid = self._login('PhotoStation')

            if not (self.sid or self.photo_sid):
                self._logger.error("Failed to authenticate with any Synology session")
                return False

            if not self.sid:
                self.sid = self.photo_sid

            sessions = [name for name, sid in (('FileStation', self.sid), ('PhotoStation', self.photo_sid)) if sid]
            self._logger.info(f"Successfully authenticated with Synology (sessions: {', '.join(sessions)})")
            self._authenticated = True

        if self.has_personal_space_albums:
            self._logger.info(
                f"Using personal space albums: persons={self.config.person_ids} "
                f"concepts={self.config.concept_ids} geocoding={self.config.geocoding_ids}"
            )
            return True

        if self.config.tag_names:
            if not self.find_tags():
                self._logger.error("Failed to find Synology tags")
                return False
            return True

        if self.config.album_name and not self.use_shared_album:
            if not self.find_album():
                self._logger.error("Failed to find Synology album")
                return False

        return True

    def logout(self) -> None:
        """End all sessions."""
        if self.use_shared_album:
            return

        had_session = bool(self.sid or self.photo_sid)
        for session, sid in (('FileStation', self.sid), ('PhotoStation', self.photo_sid)):
            if not sid:
                continue
            try:
                requests.get(
                    f"{self.base_url}{AUTH_API_PATH}",
                    params={'api': 'SYNO.API.Auth', 'version': '3', 'method': 'logout',
                            'session': session, '_sid': sid},
                    timeout=5,
                    verify=self.config.verify_ssl
                )
            except requests.RequestException as e:
                self._logger.debug(f"Error logging out from {session}: {e}")

        self.sid = None
        self.photo_sid = None
        self._authenticated = False
        if had_session:
            self._logger.info("Logged out from Synology")

    def _ensure_session(self) -> None:
        if self._authenticated:
            return
        if not self.authenticate():
            raise AuthenticationError("Failed to authenticate with Synology")

    # -- Albums and tags -----------------------------------------------------

    def find_album(self) -> bool:
        """Resolve the configured album name (or every album) to folder ids."""
        data = self._get(PHOTOS_API_PATH, {
            'api': 'SYNO.Foto.Browse.Album',
            'version': '1',
            'method': 'list',
            'offset': 0,
            'limit': 100,
            '_sid': self.sid,
        }, timeout=10)

        if not data or not data.get('success'):
            self._logger.error(f"Failed to list albums: {json.dumps(data)}")
            return False

        albums = (data.get('data') or {}).get('list') or []

        if not self.config.album_name:
            self._logger.info(f"Found {len(albums)} albums, will fetch from all")
            self.folder_ids = [album['id'] for album in albums]
            return True

        wanted = self.config.album_name.lower()
        for album in albums:
            if str(album.get('name', '')).lower() == wanted:
                self._logger.info(f"Found album: {album['name']}")
                self.folder_ids = [album['id']]
                return True

        available = ', '.join(str(a.get('name')) for a in albums)
        self._logger.warning(f'Album "{self.config.album_name}" not found. Available albums: {available}')
        return False

    def _matching_tags(self, tags: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        wanted = {name.lower() for name in self.config.tag_names}
        return [tag for tag in tags if str(tag.get('name', '')).lower() in wanted]

    def find_tags(self) -> bool:
        """Resolve configured tag names to tag ids in each space."""
        self.tag_ids = {}

        if self.use_shared_album:
            spaces = [(SHARED_SPACE, 'shared', 'SYNO.Foto.Browse.GeneralTag')]
        else:
            spaces = [
                (PERSONAL_SPACE, 'personal', 'SYNO.Foto.Browse.GeneralTag'),
                (SHARED_SPACE, 'shared', 'SYNO.FotoTeam.Browse.GeneralTag'),
            ]

        for space_id, space_name, api in spaces:
            params = {'api': api, 'version': '1', 'method': 'list', 'offset': 0, 'limit': 500}
            data = self._get(PHOTOS_API_PATH, self._auth_params(params, space_id), timeout=10)
            if not data or not data.get('success'):
                self._logger.warning(f"Failed to list tags in {space_name} space")
                continue

            matched = self._matching_tags((data.get('data') or {}).get('list') or [])
            if matched:
                self.tag_ids[space_id] = [tag['id'] for tag in matched]
                names = ', '.join(f"{t.get('name')}({t['id']})" for t in matched)
                self._logger.info(f"Found {len(matched)} tag(s) in {space_name} space: {names}")

        if not self.tag_ids:
            self._logger.warning(f"No matching tags found for: {', '.join(self.config.tag_names)}")
            return False
        return True

    # -- Listing -------------------------------------------------------------

    def list_photos(self, offset: int = 0, limit: int = 100) -> List[PhotoItem]:
        """
        List one page of photos for the configured selection.

        Raises:
            AuthenticationError: No valid session could be established.
        """
        self._ensure_session()

        if self.has_personal_space_albums:
            photos = self._fetch_personal_space_albums(offset, limit)
        elif self.tag_ids:
            photos = self._fetch_by_tags(offset, limit)
        elif self.use_shared_album:
            photos = self._fetch_items({'offset': offset, 'limit': limit}, None, 'shared album')
        elif self.folder_ids:
            photos = []
            for folder_id in self.folder_ids:
                photos.extend(self._fetch_items(
                    {'offset': offset, 'limit': limit, 'album_id': folder_id}, None, f"album {folder_id}"
                ))
        else:
            photos = self._fetch_items({'offset': offset, 'limit': limit}, None, 'all photos')

        photos = dedupe_photos(photos)
        self._logger.info(f"Fetched {len(photos)} photos from Synology Photos (offset: {offset})")
        return photos

    def _fetch_items(
        self,
        extra: Dict[str, Any],
        space_id: Optional[int],
        description: str,
        api: str = 'SYNO.Foto.Browse.Item',
        person_id: Optional[int] = None
    ) -> List[PhotoItem]:
        params = {'api': api, 'version': '1', 'method': 'list', 'additional': ITEM_ADDITIONAL}
        params.update(extra)
        params = self._auth_params(params, space_id)

        data = self._get(PHOTOS_API_PATH, params, timeout=30)
        if data is None:
            return []

        if not data.get('success'):
            code = (data.get('error') or {}).get('code')
            if code == ERROR_LIMIT_CONDITION:
                self._logger.debug(f"Limit rejected for {description}, retrying with limit {REDUCED_LIMIT}")
                params['limit'] = REDUCED_LIMIT
                data = self._get(PHOTOS_API_PATH, params, timeout=30)
            if not data or not data.get('success'):
                if code != ERROR_NOT_FOUND:
                    self._logger.warning(f"Failed to fetch {description}: {json.dumps(data)}")
                return []

        raw = (data.get('data') or {}).get('list') or []
        self._logger.debug(f"API returned {len(raw)} items for {description}")
        return self._process_photo_list(raw, space_id, person_id)

    def _fetch_personal_space_albums(self, offset: int, limit: int) -> List[PhotoItem]:
        photos: List[PhotoItem] = []
        sources = (
            ('person_id', 'person', self.config.person_ids),
            ('concept_id', 'concept', self.config.concept_ids),
            ('geocoding_id', 'geocoding', self.config.geocoding_ids),
        )
        for param, type_name, ids in sources:
            for album_id in ids:
                photos.extend(self._fetch_items(
                    {'offset': offset, 'limit': limit, param: album_id},
                    PERSONAL_SPACE,
                    f"{type_name} {album_id}",
                    person_id=album_id if param == 'person_id' else None,
                ))

        # Newest first so that new photos are picked up early
        photos.sort(key=lambda p: p.created, reverse=True)
        if len(photos) > limit:
            self._logger.debug(f"Limiting {len(photos)} photos to batch size {limit}")
            photos = photos[:limit]
        return photos

    def _fetch_by_tags(self, offset: int, limit: int) -> List[PhotoItem]:
        photos: List[PhotoItem] = []
        for space_id, tag_ids in self.tag_ids.items():
            api = 'SYNO.FotoTeam.Browse.Item' if space_id == SHARED_SPACE and not self.use_shared_album \
                else 'SYNO.Foto.Browse.Item'
            for tag_id in tag_ids:
                photos.extend(self._fetch_items(
                    {'offset': offset, 'limit': limit, 'general_tag_id': tag_id},
                    space_id,
                    f"tag {tag_id} in space {space_id}",
                    api=api,
                ))
        return photos

    def _process_photo_list(
        self,
        raw_photos: List[Dict[str, Any]],
        space_id: Optional[int],
        person_id: Optional[int] = None
    ) -> List[PhotoItem]:
        now_ms = int(time.time() * 1000)
        items = []
        for photo in raw_photos:
            if photo.get('type') not in PHOTO_TYPES:
                continue

            photo_id = photo['id']
            cache_key = ((photo.get('additional') or {}).get('thumbnail') or {}).get('cache_key')
            items.append(PhotoItem(
                path=photo.get('filename') or f"photo_{photo_id}",
                url=self.thumbnail_url(photo_id, cache_key, space_id),
                created=photo['time'] * 1000 if photo.get('time') else now_ms,
                modified=photo['indexed_time'] * 1000 if photo.get('indexed_time') else now_ms,
                provider_id=photo_id,
                space_id=space_id,
                person_id=person_id,
            ))
        return items

    # -- URLs and downloads --------------------------------------------------

    def thumbnail_url(self, photo_id: int, cache_key: Optional[str], space_id: Optional[int] = None) -> str:
        """Build the extra-large thumbnail URL for a photo."""
        base = f"{self.base_url}{PHOTOS_API_PATH}"
        common = f'version=2&method=get&id={photo_id}&cache_key="{cache_key}"&type="unit"&size="xl"'

        if self.use_shared_album:
            return f"{base}?api=SYNO.Foto.Thumbnail&{common}&passphrase={self.config.share_token}"

        api = 'SYNO.FotoTeam.Thumbnail' if space_id == SHARED_SPACE else 'SYNO.Foto.Thumbnail'
        url = f"{base}?api={api}&{common}&_sid={self.sid}"
        if space_id == PERSONAL_SPACE:
            url += f"&space_id={space_id}"
        return url

    def original_url(self, photo_id: int, space_id: Optional[int] = None) -> Optional[str]:
        """Build the original-file download URL, or None without a session."""
        base = f"{self.base_url}{PHOTOS_API_PATH}"

        if self.use_shared_album:
            return (f"{base}?api=SYNO.Foto.Download&version=1&method=download"
                    f"&unit_id=[{photo_id}]&SynoToken={self.config.share_token}")

        session_id = self.photo_sid or self.sid
        if not session_id:
            return None

        api = 'SYNO.FotoTeam.Download' if space_id == SHARED_SPACE else 'SYNO.Foto.Download'
        url = f"{base}?api={api}&version=1&method=download&unit_id=[{photo_id}]&_sid={session_id}"
        if space_id is None or space_id == PERSONAL_SPACE:
            url += "&space_id=0"
        return url

    def download_bytes(self, url: str) -> Optional[bytes]:
        """Download a photo (usually a thumbnail) by URL."""
        try:
            response = requests.get(url, timeout=30, verify=self.config.verify_ssl)
            response.raise_for_status()
            return response.content
        except requests.RequestException as e:
            self._logger.error(f"Error downloading photo: {e}")
            return None

    def download_original(
        self,
        provider_id: int,
        space_id: Optional[int] = None,
        file_path: Optional[str] = None,
        person_id: Optional[int] = None
    ) -> Optional[bytes]:
        """
        Download the original file of a photo.

        Returns:
            The file bytes, or None when the server answered with an error
            payload instead of an image.
        """
        url = self.original_url(provider_id, space_id)
        if url is None:
            self._logger.warning("No session ID available for downloading original photo")
            return None

        try:
            response = requests.get(url, timeout=60, verify=self.config.verify_ssl)
        except requests.RequestException as e:
            self._logger.error(f"Error downloading original photo {provider_id}: {e}")
            return None

        if response.status_code >= 500:
            self._logger.error(f"Server error {response.status_code} downloading original photo {provider_id}")
            return None

        content = response.content or b''
        content_type = response.headers.get('content-type', '')

        if 'application/json' in content_type or (
                len(content) < MIN_IMAGE_BYTES and content.strip()[:1] in (b'{', b'[')):
            self._logger.error(
                f"Synology Download API returned error for photo {provider_id}: "
                f"{content[:200].decode('utf-8', errors='replace')}"
            )
            return None

        if len(content) < MIN_IMAGE_BYTES:
            self._logger.warning(
                f"Downloaded file for photo {provider_id} is suspiciously small ({len(content)} bytes)"
            )
            return None

        self._logger.debug(f"Downloaded original photo {provider_id}: {len(content) / 1024 / 1024:.2f}MB")
        return content

    def get_exif_metadata(self, provider_id: int, space_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Fetch the EXIF block of a photo from the API."""
        api = 'SYNO.FotoTeam.Browse.Item' if space_id == SHARED_SPACE else 'SYNO.Foto.Browse.Item'
        params: Dict[str, Any] = {'api': api, 'version': '1', 'method': 'get_exif', 'id': f"[{provider_id}]"}

        if self.use_shared_album:
            params['passphrase'] = self.config.share_token
        else:
            session_id = self.photo_sid or self.sid
            if not session_id:
                self._logger.warning("No session ID available for EXIF metadata request")
                return None
            params['_sid'] = session_id
            if space_id is None or space_id == PERSONAL_SPACE:
                params['space_id'] = 0

        data = self._get(PHOTOS_API_PATH, params, timeout=10)
        if data and data.get('success') and data.get('data'):
            return data['data']

        self._logger.debug(f"EXIF metadata API call failed for photo {provider_id}: {json.dumps(data)}")
        return None
