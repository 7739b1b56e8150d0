import asyncio
import binascii
import logging
import math
import struct
from argparse import Namespace
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os
import httpx
from Cryptodome.Cipher import AES
from Cryptodome.Util.Padding import unpad

from hlsplaylist import Key, Segment
from hlsresolver import ResolutionResult
from utils import (
    async_suppress,
    client_config_from_args,
    get_host,
    get_httpx_async_client,
    my_dec_on_exception,
    naturalsize,
    sync_to_async,
)

logger = logging.getLogger("asynchlsdl")

TS_SYNC_BYTE = b"\x47"


class AsyncHLSDLErrorFatal(Exception):
    def __init__(self, msg, exc_info=None):
        super().__init__(msg)
        self.exc_info = exc_info

    def __str__(self):
        return f"{self.__class__.__name__}{self.args[0]}"


class AsyncHLSDLError(Exception):
    def __init__(self, msg, exc_info=None):
        super().__init__(msg)
        self.exc_info = exc_info


class SegmentDecryptError(Exception):
    def __init__(self, msg, exc_info=None):
        super().__init__(msg)
        self.exc_info = exc_info


RetryableErrors = (AsyncHLSDLError, httpx.HTTPError, OSError)


def get_iv(key: Key, segment: Segment) -> bytes:
    """
    IV of the segment: the IV attribute of its key (hex, with or without 0x)
    or, when the key has none, the media sequence number of the segment as a
    big-endian 128 bits integer.
    """
    if not (_iv := key.iv):
        return struct.pack(">8xq", segment.media_sequence)
    if _iv[:2] in ("0x", "0X"):
        _iv = _iv[2:]
    try:
        return binascii.unhexlify(_iv.rjust(32, "0"))
    except (binascii.Error, ValueError) as e:
        raise SegmentDecryptError(f"invalid IV {key.iv}") from e


def decrypt_segment(data: bytes, key: bytes, iv: bytes) -> bytes:
    try:
        return unpad(AES.new(key, AES.MODE_CBC, iv).decrypt(data), AES.block_size)
    except ValueError as e:
        raise SegmentDecryptError(f"decrypt TS failed: {repr(e)}") from e


def strip_to_sync_byte(data: bytes) -> bytes:
    if (_pos := data.find(TS_SYNC_BYTE)) > 0:
        return data[_pos:]
    return data


@dataclass
class SegmentResult:
    index: int
    url: str
    status: str = "init"
    size: int = 0
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class DownloadReport:
    n_segments: int = 0
    results: List[SegmentResult] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    filename: Optional[Path] = None
    filesize: int = 0

    @property
    def failed(self) -> List[SegmentResult]:
        return [res for res in self.results if not res.ok]

    @property
    def down_size(self) -> int:
        return sum(res.size for res in self.results if res.ok)

    @property
    def ok(self) -> bool:
        return bool(self.results) and not self.failed and not self.skipped


class AsyncHLSDownloader:
    def __init__(self, args: Namespace, result: ResolutionResult, client: Optional[httpx.AsyncClient] = None):
        self.args = args
        self.result = result
        self.segments = result.playlist.segments
        self.n_workers: int = args.concurrency
        self.n_total_fragments = len(self.segments)
        self.format_frags = f"{(int(math.log(max(self.n_total_fragments, 1), 10)) + 1)}d"
        self.download_path = Path(args.path)
        self.filename = Path(self.download_path, args.output)
        self.premsg = f"[{get_host(str(result.url))}]"

        try:
            self.download_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AsyncHLSDLErrorFatal(f"{self.premsg} couldnt create {self.download_path}: {repr(e)}") from e

        self.status = "init"
        self.n_dl_fragments = 0
        self.down_size = 0
        self._attempts = defaultdict(int)
        self.report = DownloadReport(n_segments=self.n_total_fragments)

        self._client = client
        self.config_httpx = client_config_from_args(args)

        self.ex_dl = ThreadPoolExecutor(thread_name_prefix="ex_hlsdl")
        self.sync_to_async = partial(sync_to_async, thread_sensitive=False, executor=self.ex_dl)

        self._download_frag_retry = my_dec_on_exception(
            RetryableErrors,
            max_tries=args.retries,
            factor=args.backoff_factor,
            max_value=args.backoff_max,
            on_backoff=self._log_backoff,
            logger=None,
        )(self._download_frag)

    def frag_file(self, index: int) -> Path:
        return Path(self.download_path, f"{index}.ts")

    def temp_file(self, index: int) -> Path:
        return Path(self.download_path, f"{index}.ts_tmp")

    def _log_backoff(self, details):
        _index = details["args"][0]
        logger.warning(
            f"{self.premsg}[frag-{_index}] try[{details['tries']}/{self.args.retries}] "
            + f"failed, waiting {details['wait']:.2f}s: {repr(details.get('exception'))}"
        )

    async def _download_frag(self, index: int, segment: Segment, client: httpx.AsyncClient) -> int:
        self._attempts[index] += 1
        _url = self.result.absolute_uri(segment.uri)
        _premsg = f"{self.premsg}[frag-{index}][dl]"

        resp = await client.get(_url)
        logger.debug(f"{_premsg} {resp.request} {resp} hsize[{resp.headers.get('content-length')}]")
        resp.raise_for_status()
        _data = resp.content

        _key = self.result.playlist.key_for(segment)
        if _key and _key.is_encrypted and (_key_data := self.result.key_material(segment)):
            _data = await self.sync_to_async(decrypt_segment)(_data, _key_data, get_iv(_key, segment))

        _data = strip_to_sync_byte(_data)

        _temp_file = self.temp_file(index)
        try:
            async with aiofiles.open(_temp_file, "wb") as fileobj:
                await fileobj.write(_data)
            await aiofiles.os.replace(_temp_file, self.frag_file(index))
        except OSError as e:
            logger.debug(f"{_premsg} save TS file failed: {repr(e)}")
            async with async_suppress(OSError):
                await aiofiles.os.remove(_temp_file)
            raise
        return len(_data)

    async def fetch_segment(self, index: int, segment: Segment, client: httpx.AsyncClient) -> SegmentResult:
        _res = SegmentResult(index=index, url=self.result.absolute_uri(segment.uri))
        try:
            _res.size = await self._download_frag_retry(index, segment, client)
            _res.status = "ok"
            self.n_dl_fragments += 1
            self.down_size += _res.size
            logger.debug(
                f"{self.premsg}[frag-{index}] OK "
                + f"[{self.n_dl_fragments:{self.format_frags}}/{self.n_total_fragments:{self.format_frags}}]"
            )
        except SegmentDecryptError as e:
            _res.status, _res.error = "error", str(e)
            logger.error(f"{self.premsg}[frag-{index}] {str(e)}")
        except RetryableErrors as e:
            _res.status, _res.error = "error", repr(e)
            logger.error(f"{self.premsg}[frag-{index}] giving up after {self._attempts[index]} tries: {repr(e)}")
        _res.attempts = self._attempts[index]
        return _res

    async def fetch_async(self) -> DownloadReport:
        _premsg = f"{self.premsg}[fetch_async]"
        self.status = "downloading"
        _sem = asyncio.Semaphore(self.n_workers)

        async def _worker(index, segment, client):
            async with _sem:
                return await self.fetch_segment(index, segment, client)

        client = self._client or get_httpx_async_client(self.config_httpx)
        logger.debug(f"{_premsg} frags[{self.n_total_fragments}] workers[{self.n_workers}]")
        try:
            _results = await asyncio.gather(
                *[_worker(i, seg, client) for i, seg in enumerate(self.segments)])
        finally:
            if not self._client:
                await client.aclose()

        self.report.results = sorted(_results, key=lambda x: x.index)
        self.status = "init_manipulating" if not self.report.failed else "error"
        logger.info(
            f"{_premsg} frags ok[{self.n_dl_fragments}/{self.n_total_fragments}] "
            + f"failed[{len(self.report.failed)}] size[{naturalsize(self.down_size)}]"
        )
        return self.report

    async def ensamble_file(self) -> Path:
        _premsg = f"{self.premsg}[ensamble_file]"
        self.status = "manipulating"
        self.report.skipped = []

        try:
            fileobj = await aiofiles.open(self.filename, "wb")
        except OSError as e:
            self.status = "error"
            raise AsyncHLSDLErrorFatal(f"{_premsg} couldnt create {self.filename}: {repr(e)}") from e

        _size = 0
        try:
            for i in range(self.n_total_fragments):
                try:
                    async with aiofiles.open(self.frag_file(i), "rb") as frag:
                        _data = await frag.read()
                    await fileobj.write(_data)
                    _size += len(_data)
                except OSError as e:
                    logger.warning(f"{_premsg} frag[{i}] skipped: {repr(e)}")
                    self.report.skipped.append(i)
            await fileobj.flush()
        finally:
            await fileobj.close()

        self.report.filename = self.filename
        self.report.filesize = _size
        self.status = "done"

        if self.report.skipped:
            logger.warning(f"{_premsg} skipped frags [{len(self.report.skipped)}]")
        elif self.args.clean_segments:
            for i in range(self.n_total_fragments):
                async with async_suppress(OSError):
                    await aiofiles.os.remove(self.frag_file(i))

        logger.info(f"{_premsg} {self.filename} [{naturalsize(_size)}]")
        return self.filename

    def close(self):
        self.ex_dl.shutdown(wait=False)

    def print_hookup(self):
        _pre = "[HLS]"
        _prefr = f"[{self.n_dl_fragments:{self.format_frags}}/{self.n_total_fragments:{self.format_frags}}]"
        match self.status:
            case "done":
                return f"{_pre}: Completed {self.filename}"
            case "init_manipulating":
                return f"{_pre}: Waiting for Ensambling"
            case "manipulating":
                return f"{_pre}: Ensambling"
            case "error":
                return f"{_pre}: ERROR [{naturalsize(self.down_size)}] {_prefr}"
            case "downloading":
                return f"{_pre}: Downloading [{naturalsize(self.down_size)}] {_prefr}"
            case _:
                return f"{_pre}: Waiting to DL {_prefr}"
