import argparse
import contextlib
import logging
import re
from pathlib import Path
from typing import Optional, Sequence

import backoff
import httpx
from asgiref.sync import sync_to_async

assert sync_to_async

# ***********************************+
# ************************************

CONF_FIREFOX_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0"
CONF_HLS_MAX_CONCURRENCY = 20
CONF_HLS_MAX_TRIES = 10
CONF_HLS_BACKOFF_FACTOR = 0.5
CONF_HLS_BACKOFF_MAX = 30
CONF_HLS_TIMEOUT = 30
CONF_HLS_STORE_FOLDER = "./temp"
CONF_HLS_OUTPUT_NAME = "main.mp4"

CLIENT_CONFIG = {
    "timeout": httpx.Timeout(timeout=CONF_HLS_TIMEOUT),
    "limits": httpx.Limits(
        max_connections=None, max_keepalive_connections=None, keepalive_expiry=5.0),
    "follow_redirects": True,
    "headers": {
        "User-Agent": CONF_FIREFOX_UA,
        "Accept": "*/*",
        "Accept-Language": "en,es-ES;q=0.5",
    },
}


class async_suppress(contextlib.AbstractAsyncContextManager):
    def __init__(self, *exceptions):
        self._exceptions = exceptions

    async def __aenter__(self):
        pass

    async def __aexit__(self, exctype, excinst, exctb):
        return exctype is not None and issubclass(exctype, self._exceptions)


def get_host(url: str) -> str:
    return re.sub(r"^www\.", "", httpx.URL(url).host)


def naturalsize(value, format_="6.2f"):
    suffix = ("kB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB")
    base = 1000
    abs_bytes = abs(float(value))

    if abs_bytes < base:
        return f"{abs_bytes:{format_}} B"

    for i, s in enumerate(suffix):
        unit = base ** (i + 2)
        if abs_bytes < unit:
            return f"{(base * abs_bytes / unit):{format_}} {s}"
    return f"{(base * abs_bytes / unit):{format_}} {s}"  # type: ignore


def my_dec_on_exception(exception, **kwargs):
    """
    backoff.on_exception with exponential waits and the defaults used across
    the downloaders ('factor', 'base' and 'max_value' go to backoff.expo).
    """
    _kwargs = {"max_tries": None, "max_time": None, "raise_on_giveup": True, "jitter": backoff.full_jitter} | kwargs
    return backoff.on_exception(backoff.expo, exception, **_kwargs)


def parse_headers(headers: Optional[str]) -> dict:
    _headers = {}
    if not headers:
        return _headers
    for item in re.split(r"[\n;]", headers):
        if ":" not in item:
            continue
        name, value = item.split(":", 1)
        if name := name.strip():
            _headers[name] = value.strip()
    return _headers


def client_config_from_args(args: argparse.Namespace) -> dict:
    _config = CLIENT_CONFIG | {
        "timeout": httpx.Timeout(timeout=getattr(args, "timeout", CONF_HLS_TIMEOUT)),
        "verify": getattr(args, "checkcert", False),
        "headers": CLIENT_CONFIG["headers"]
        | {"User-Agent": getattr(args, "useragent", None) or CONF_FIREFOX_UA}
        | parse_headers(getattr(args, "headers", None)),
    }
    if _proxy := getattr(args, "proxy", None):
        _config["proxy"] = _proxy
    return _config


def get_httpx_client(config: Optional[dict] = None) -> httpx.Client:
    return httpx.Client(**(config or CLIENT_CONFIG))


def get_httpx_async_client(config: Optional[dict] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(**(config or CLIENT_CONFIG))


def init_argparser(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Async downloader of HLS (m3u8) streams")
    parser.add_argument("url", help="URL of the m3u8 playlist (master or media)", type=str)
    parser.add_argument("--path", help="folder to store the fragments", default=CONF_HLS_STORE_FOLDER, type=str)
    parser.add_argument(
        "-o", "--output", help="name of the final file, relative to --path", default=CONF_HLS_OUTPUT_NAME, type=str)
    parser.add_argument(
        "-c", "--concurrency", help="max number of fragments being downloaded at the same time",
        default=CONF_HLS_MAX_CONCURRENCY, type=int)
    parser.add_argument(
        "--retries", help="max number of tries for each fragment", default=CONF_HLS_MAX_TRIES, type=int)
    parser.add_argument(
        "--backoff-factor", help="secs of the first wait between tries, doubled after each try",
        default=CONF_HLS_BACKOFF_FACTOR, type=float)
    parser.add_argument(
        "--backoff-max", help="max secs of wait between tries", default=CONF_HLS_BACKOFF_MAX, type=float)
    parser.add_argument("--timeout", help="secs timeout of every request", default=CONF_HLS_TIMEOUT, type=float)
    parser.add_argument("--headers", help="extra headers 'Name: value', separated by ';'", default="", type=str)
    parser.add_argument("--useragent", default=CONF_FIREFOX_UA, type=str)
    parser.add_argument("--proxy", default=None, type=str)
    parser.add_argument("--checkcert", help="checkcertificate", action="store_true", default=False)
    parser.add_argument(
        "--clean-segments", help="remove the fragments once the final file is built",
        action="store_true", default=False)
    parser.add_argument("--log-config", help="json file with a logging dictConfig", default=None, type=str)
    parser.add_argument("-v", "--verbose", help="verbose", action="store_true", default=False)
    parser.add_argument("-q", "--quiet", help="quiet", action="store_true", default=False)

    args = parser.parse_args(argv)

    if args.concurrency < 1:
        parser.error("--concurrency must be >= 1")

    if args.retries < 1:
        parser.error("--retries must be >= 1")

    if args.quiet:
        args.verbose = False

    args.path = str(Path(args.path).expanduser())

    return args


def init_config(args: Optional[argparse.Namespace] = None, test=False) -> logging.Logger:
    from supportlogging import init_logging

    _level = None
    if args:
        if args.verbose:
            _level = logging.DEBUG
        elif args.quiet:
            _level = logging.WARNING
    return init_logging(
        "m3u8dl",
        config_path=getattr(args, "log_config", None),
        console_level=_level,
        test=test,
    )
