import hashlib
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

import httpx

from hlsplaylist import (
    CRYPT_METHOD_AES,
    Playlist,
    Segment,
    UnsupportedCryptoMethod,
    parse,
)
from utils import CLIENT_CONFIG, get_httpx_client

logger = logging.getLogger("hlsresolver")


class HLSResolveError(Exception):
    def __init__(self, msg, exc_info=None):
        super().__init__(msg)
        self.exc_info = exc_info


class InvalidManifestURL(HLSResolveError):
    pass


class ManifestFetchError(HLSResolveError):
    pass


class KeyFetchError(HLSResolveError):
    pass


class EmptyPlaylist(HLSResolveError):
    pass


class NestedMasterPlaylist(HLSResolveError):
    pass


@dataclass(frozen=True)
class ResolutionResult:
    url: httpx.URL
    playlist: Playlist
    keys: Mapping[int, bytes] = field(default_factory=dict)

    def absolute_uri(self, uri: str) -> str:
        return str(self.url.join(uri))

    def key_material(self, segment: Segment) -> Optional[bytes]:
        if segment.key_index is None:
            return None
        return self.keys.get(segment.key_index)


def normalize_url(url) -> httpx.URL:
    try:
        _url = httpx.URL(str(url))
    except httpx.InvalidURL as e:
        raise InvalidManifestURL(f"invalid url {url}: {e}") from e
    if _url.scheme not in ("http", "https") or not _url.host:
        raise InvalidManifestURL(f"invalid url {url}: only absolute http(s) urls are supported")
    return _url


class HLSResolver:
    """
    Turns the URL of a m3u8 document into a ResolutionResult: the media
    playlist (following one master -> media hop) and the material of every
    AES-128 key, each key downloaded only once.
    """

    def __init__(self, client: Optional[httpx.Client] = None, config: Optional[dict] = None):
        self._own_client = client is None
        self.client = client or get_httpx_client(config or CLIENT_CONFIG)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        if self._own_client:
            self.client.close()

    def _get(self, url: str) -> httpx.Response:
        resp = self.client.get(url)
        resp.raise_for_status()
        return resp

    def get_m3u8_doc(self, url: httpx.URL) -> str:
        try:
            return self._get(str(url)).content.decode("utf-8", "replace")
        except httpx.HTTPError as e:
            raise ManifestFetchError(f"[get_m3u8_doc] request m3u8 url {url} failed: {repr(e)}") from e

    def download_key(self, key_uri: str) -> bytes:
        try:
            return self._get(key_uri).content
        except httpx.HTTPError as e:
            raise KeyFetchError(f"[download_key] extract key {key_uri} failed: {repr(e)}") from e

    def resolve(self, url, _hops: int = 0) -> ResolutionResult:
        _url = normalize_url(url)
        _premsg = f"[resolve][{_url}]"
        logger.debug(f"{_premsg} hops[{_hops}]")

        playlist = parse(self.get_m3u8_doc(_url))

        if playlist.is_master:
            if _hops:
                raise NestedMasterPlaylist(f"{_premsg} master playlist inside a master playlist")
            _media_url = _url.join(playlist.master_playlist_uris[0])
            logger.info(f"{_premsg} master playlist, going to {_media_url}")
            return self.resolve(_media_url, _hops=_hops + 1)

        if not playlist.segments:
            raise EmptyPlaylist(f"{_premsg} can not found any segment")

        keys = {}
        for seg in playlist.segments:
            if not (key := playlist.key_for(seg)) or not key.is_encrypted:
                continue
            if key.method != CRYPT_METHOD_AES:
                raise UnsupportedCryptoMethod(f"unknown or unsupported cryption method: {key.method}")
            if key.index in keys:
                continue
            if not key.uri:
                raise KeyFetchError(f"{_premsg} key[{key.index}] without uri")
            _key_url = str(_url.join(key.uri))
            keys[key.index] = _key_data = self.download_key(_key_url)
            logger.debug(
                f"{_premsg} key[{key.index}] {_key_url} len[{len(_key_data)}] "
                + f"sha1[{hashlib.sha1(_key_data).hexdigest()}]"
            )

        logger.info(f"{_premsg} segments[{len(playlist.segments)}] keys[{len(keys)}]")
        return ResolutionResult(url=_url, playlist=playlist, keys=MappingProxyType(keys))


def resolve(url, client: Optional[httpx.Client] = None, config: Optional[dict] = None) -> ResolutionResult:
    with HLSResolver(client=client, config=config) as resolver:
        return resolver.resolve(url)
