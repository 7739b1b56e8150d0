import atexit
import contextlib
import json
import logging
import logging.config
import logging.handlers
import shutil
import threading
import time
from copy import copy
from logging.config import (  # type: ignore
    ConvertingDict,
    ConvertingList,
    valid_ident,
)
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import Empty, Queue
from textwrap import fill
from typing import Optional

MAPPING = {
    "DEBUG": 34,  # white
    "INFO": 32,  # cyan
    "WARNING": 33,  # yellow
    "ERROR": 31,  # red
    "CRITICAL": 41,  # white on red bg
}

PREFIX = "\033["
SUFFIX = "\033[0m"

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)-12s %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# width of the console prefix, used to indent the wrapped lines
CONSOLE_INDENT = 45

DEFAULT_LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "colored": {"class": "supportlogging.ColoredFormatter", "format": CONSOLE_FORMAT, "datefmt": "%H:%M:%S"},
        "file": {"class": "supportlogging.FileFormatter", "format": FILE_FORMAT},
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "colored",
            "stream": "ext://sys.stderr",
        },
        "info_file_handler": {
            "class": "logging.handlers.RotatingFileHandler",
            "level": "DEBUG",
            "formatter": "file",
            "filename": "{name}.log",
            "maxBytes": 10485760,
            "backupCount": 3,
            "encoding": "utf8",
            "delay": True,
        },
        "queue_listener": {
            "()": "supportlogging.QueueListenerHandler",
            "handlers": ["cfg://handlers.console", "cfg://handlers.info_file_handler"],
        },
    },
    "root": {"level": "DEBUG", "handlers": ["queue_listener"]},
}


class FileFormatter(logging.Formatter):
    def format(self, record):
        file_record = copy(record)
        if isinstance(file_record.msg, str) and file_record.msg.startswith("%no%"):
            file_record.msg = file_record.msg[4:]
        return logging.Formatter.format(self, file_record)


class ColoredFormatter(logging.Formatter):
    def format(self, record):
        colored_record = copy(record)
        levelname = colored_record.levelname
        seq = MAPPING.get(levelname, 37)  # default white
        colored_record.levelname = f"{PREFIX}{seq}m{levelname}{SUFFIX}"
        if not isinstance(colored_record.msg, str):
            return logging.Formatter.format(self, colored_record)
        if "%no%" in colored_record.msg:
            colored_record.msg = colored_record.msg.replace("%no%", "")
        else:
            col = shutil.get_terminal_size().columns
            width = max(col - CONSOLE_INDENT - 2, 40)
            colored_lines = []
            for line in colored_record.msg.splitlines():
                colored_lines += fill(line, width, replace_whitespace=False).splitlines()
            colored_record.msg = ("\n" + " " * CONSOLE_INDENT).join(colored_lines)
        return logging.Formatter.format(self, colored_record)


def _resolve_handlers(_list):
    if not isinstance(_list, ConvertingList):
        return _list
    return [_list[i] for i in range(len(_list))]


def _resolve_queue(q):
    if not isinstance(q, ConvertingDict):
        return q
    if "__resolved_value__" in q:
        return q["__resolved_value__"]
    cname = q.pop("class")
    klass = q.configurator.resolve(cname)
    props = q.pop(".", None)
    kwargs = {k: q[k] for k in q if valid_ident(k)}
    result = klass(**kwargs)
    if props:
        for name, value in props.items():
            setattr(result, name, value)
    q["__resolved_value__"] = result
    return result


class QueueListenerHandler(QueueHandler):
    """
    Handler that only enqueues records, the handlers passed in the config do
    the real work from the thread of SingleThreadQueueListener, so logging
    from the event loop never blocks on the console or the log file.
    """

    def __init__(self, handlers, respect_handler_level=True, queue=None):
        super().__init__(_resolve_queue(queue) if queue is not None else Queue(-1))
        self._listener = SingleThreadQueueListener(
            self.queue,
            *_resolve_handlers(handlers),
            respect_handler_level=respect_handler_level,
        )
        self.start()
        atexit.register(self.stop)

    def start(self):
        self._listener.start()

    def stop(self):
        self._listener.stop()


class SingleThreadQueueListener(QueueListener):
    monitor_thread = None
    listeners = []
    sleep_time = 0.1
    _LOCK = threading.Lock()

    def __init__(self, queue, *handlers, respect_handler_level=True):
        self.queue = queue
        self.handlers = handlers
        self._thread = None
        self.respect_handler_level = respect_handler_level
        self._stopped = False

    @classmethod
    def monitor_running(cls):
        return cls.monitor_thread is not None and cls.monitor_thread.is_alive()

    @classmethod
    def _start(cls):
        with cls._LOCK:
            if not cls.monitor_running():
                cls.monitor_thread = t = threading.Thread(
                    target=cls._monitor_all, name="logging_monitor", daemon=True
                )
                t.start()
        return cls.monitor_thread

    @classmethod
    def _join(cls):
        """Waits for the thread to stop.
        Only call this after stopping all listeners.
        """
        if cls.monitor_running():
            cls.monitor_thread.join()
        cls.monitor_thread = None

    @classmethod
    def _monitor_all(cls):
        while cls.listeners:
            time.sleep(cls.sleep_time)
            for listener in list(cls.listeners):
                try:
                    task_done = getattr(listener.queue, "task_done", lambda: None)
                    while True:
                        if (record := listener.dequeue(False)) is listener._sentinel:
                            with contextlib.suppress(ValueError):
                                cls.listeners.remove(listener)
                            task_done()
                            break
                        listener.handle(record)
                        task_done()
                except Empty:
                    continue

    def start(self):
        SingleThreadQueueListener.listeners.append(self)
        SingleThreadQueueListener._start()

    def stop(self):
        if not self._stopped:
            self._stopped = True
            self.enqueue_sentinel()


def _load_config(config_path: Optional[str]) -> dict:
    if not config_path:
        return json.loads(json.dumps(DEFAULT_LOGGING_CONFIG))
    with open(config_path, "r") as f:
        return json.loads(f.read())


def init_logging(log_name, config_path=None, console_level=None, test=False):
    config = _load_config(config_path)
    if _file_handler := config.get("handlers", {}).get("info_file_handler"):
        if "filename" in _file_handler:
            _file_handler["filename"] = str(Path(_file_handler["filename"].format(name=log_name)).expanduser())
    if console_level is not None and (_console := config.get("handlers", {}).get("console")):
        _console["level"] = logging.getLevelName(console_level)

    logging.config.dictConfig(config)

    for _name in ("httpx", "httpcore", "asyncio", "backoff"):
        logging.getLogger(_name).setLevel(logging.WARNING)

    if test:
        return logging.getLogger("test")
    else:
        return logging.getLogger(log_name)


class LogContext:
    def __enter__(self):
        return self

    def __exit__(self, *args, **kwargs):
        list(map(lambda x: x.stop(), SingleThreadQueueListener.listeners))
        SingleThreadQueueListener._join()
