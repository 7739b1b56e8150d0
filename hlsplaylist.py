import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from m3u8 import protocol

logger = logging.getLogger("hlsplaylist")

CRYPT_METHOD_AES = "AES-128"
CRYPT_METHOD_NONE = "NONE"

LINE_PARAMETER_PATTERN = re.compile(r'([a-zA-Z-]+)=("[^"]+"|[^",]+)')


class PlaylistParseError(Exception):
    def __init__(self, msg, line=None):
        super().__init__(msg)
        self.line = line

    def __str__(self):
        if self.line is None:
            return f"{self.__class__.__name__}: {self.args[0]}"
        return f"{self.__class__.__name__}: {self.args[0]}, line: {self.line}"


class MalformedHeader(PlaylistParseError):
    pass


class MalformedKeyTag(PlaylistParseError):
    pass


class MalformedStreamInf(PlaylistParseError):
    pass


class UnsupportedCryptoMethod(PlaylistParseError):
    pass


@dataclass(eq=False)
class Key:
    method: str = ""
    uri: str = ""
    iv: str = ""
    index: int = -1

    @property
    def is_encrypted(self) -> bool:
        return self.method not in ("", CRYPT_METHOD_NONE)


@dataclass
class Segment:
    uri: str
    key_index: Optional[int] = None
    media_sequence: int = 0


@dataclass
class Playlist:
    segments: List[Segment] = field(default_factory=list)
    master_playlist_uris: List[str] = field(default_factory=list)
    keys: List[Key] = field(default_factory=list)
    media_sequence: int = 0

    @property
    def is_master(self) -> bool:
        return bool(self.master_playlist_uris)

    def key_for(self, segment: Segment) -> Optional[Key]:
        if segment.key_index is None:
            return None
        return self.keys[segment.key_index]

    def add_key(self, key: Key) -> Key:
        key.index = len(self.keys)
        self.keys.append(key)
        return key


def parse_line_parameters(line: str) -> dict:
    return {name: value.strip('"') for name, value in LINE_PARAMETER_PATTERN.findall(line)}


def _parse_key(line: str, lineno: int) -> Key:
    if not (params := parse_line_parameters(line)):
        raise MalformedKeyTag(f"invalid {protocol.ext_x_key}: {line}", line=lineno)
    method = params.get("METHOD", "")
    if method not in ("", CRYPT_METHOD_AES, CRYPT_METHOD_NONE):
        raise UnsupportedCryptoMethod(f"invalid {protocol.ext_x_key} method: {method}", line=lineno)
    return Key(method=method, uri=params.get("URI", ""), iv=params.get("IV", ""))


def parse_lines(lines: Iterable[str]) -> Playlist:
    """
    Builds a Playlist from the lines of a m3u8 document.

    Segments keep the order of their lines in the document, that order is the
    on-disk name of every fragment and the order of the final file.
    Segments following the same key tag share the same Key of the arena.
    """
    _lines = list(lines)
    if not _lines or _lines[0].strip() != protocol.ext_m3u:
        raise MalformedHeader(f"invalid m3u8, missing {protocol.ext_m3u} in line 1", line=1)

    playlist = Playlist()
    key: Optional[Key] = None
    i = 1
    while i < len(_lines):
        line = _lines[i].strip()
        lineno = i + 1
        i += 1
        if not line:
            continue
        if line.startswith(f"{protocol.ext_x_stream_inf}:"):
            while i < len(_lines) and not _lines[i].strip():
                i += 1
            if i == len(_lines) or (_uri := _lines[i].strip()).startswith("#"):
                raise MalformedStreamInf(f"{protocol.ext_x_stream_inf} without uri", line=lineno)
            playlist.master_playlist_uris.append(_uri)
            i += 1
        elif not line.startswith("#"):
            playlist.segments.append(
                Segment(
                    uri=line,
                    key_index=key.index if key else None,
                    media_sequence=playlist.media_sequence + len(playlist.segments),
                )
            )
        elif line.startswith(protocol.ext_x_key):
            key = playlist.add_key(_parse_key(line, lineno))
        elif line.startswith(f"{protocol.ext_x_media_sequence}:"):
            try:
                playlist.media_sequence = int(line.split(":", 1)[1])
            except ValueError:
                logger.warning(f"[parse_lines] invalid media sequence: {line}, line: {lineno}")

    logger.debug(
        f"[parse_lines] segments[{len(playlist.segments)}] keys[{len(playlist.keys)}] "
        + f"master uris[{len(playlist.master_playlist_uris)}]"
    )
    return playlist


def parse(text: str) -> Playlist:
    return parse_lines(text.splitlines())
