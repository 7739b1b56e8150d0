import httpx
import pytest

from utils import (
    CONF_HLS_MAX_CONCURRENCY,
    CONF_HLS_OUTPUT_NAME,
    client_config_from_args,
    init_argparser,
    my_dec_on_exception,
    naturalsize,
    parse_headers,
)


def test_argparser_defaults():
    args = init_argparser(["https://cdn.example.com/index.m3u8"])
    assert args.url == "https://cdn.example.com/index.m3u8"
    assert args.concurrency == CONF_HLS_MAX_CONCURRENCY == 20
    assert args.output == CONF_HLS_OUTPUT_NAME
    assert args.path == "temp"
    assert not args.clean_segments


def test_argparser_options():
    args = init_argparser(
        ["https://cdn.example.com/index.m3u8", "-c", "4", "--retries", "2", "--backoff-factor", "0.1",
         "--clean-segments", "-v", "-q"]
    )
    assert (args.concurrency, args.retries, args.backoff_factor) == (4, 2, 0.1)
    assert args.clean_segments
    assert args.quiet and not args.verbose


@pytest.mark.parametrize("option", [["-c", "0"], ["--retries", "0"]])
def test_argparser_rejects(option):
    with pytest.raises(SystemExit):
        init_argparser(["https://cdn.example.com/index.m3u8", *option])


def test_parse_headers():
    assert parse_headers("Referer: https://site.example.com/;X-Token:abc;broken") == {
        "Referer": "https://site.example.com/",
        "X-Token": "abc",
    }
    assert parse_headers("") == {}


def test_client_config(make_args):
    config = client_config_from_args(make_args(headers="Referer: https://a.example.com", useragent="UA/1.0"))
    assert config["headers"]["Referer"] == "https://a.example.com"
    assert config["headers"]["User-Agent"] == "UA/1.0"
    assert "proxy" not in config
    with httpx.Client(**config) as client:
        assert client.headers["referer"] == "https://a.example.com"


def test_naturalsize():
    assert naturalsize(512).strip() == "512.00 B"
    assert naturalsize(1500).strip() == "1.50 kB"
    assert naturalsize(2_500_000).strip() == "2.50 MB"


def test_dec_on_exception_retries_with_expo():
    calls = []

    @my_dec_on_exception(ValueError, max_tries=3, factor=0, max_value=0)
    def _flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ValueError("try again")
        return len(calls)

    assert _flaky() == 3


def test_dec_on_exception_gives_up():
    calls = []

    @my_dec_on_exception(ValueError, max_tries=2, factor=0, max_value=0)
    def _broken():
        calls.append(1)
        raise ValueError("broken")

    with pytest.raises(ValueError):
        _broken()
    assert len(calls) == 2
