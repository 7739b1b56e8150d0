import logging
import shutil
from argparse import Namespace
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Optional

import httpx
from codetiming import Timer
from tabulate import tabulate

from asynchlsdownloader import AsyncHLSDownloader, DownloadReport
from hlsresolver import HLSResolver, ResolutionResult
from utils import client_config_from_args, naturalsize, sync_to_async

logger = logging.getLogger("asyncDL")


class AsyncDL:
    def __init__(
        self,
        args: Namespace,
        client: Optional[httpx.Client] = None,
        async_client: Optional[httpx.AsyncClient] = None,
    ):
        self.args = args
        self._client = client
        self._async_client = async_client

        self.result: Optional[ResolutionResult] = None
        self.hlsdl: Optional[AsyncHLSDownloader] = None
        self.report: Optional[DownloadReport] = None

        self.ex_winit = ThreadPoolExecutor(thread_name_prefix="ex_wkinit")
        self.sync_to_async = partial(sync_to_async, thread_sensitive=False, executor=self.ex_winit)

        self.t1 = Timer("execution", text="[timers] Time resolve m3u8: {:.2f}", logger=logger.info)
        self.t2 = Timer("execution", text="[timers] Time DL: {:.2f}", logger=logger.info)
        self.t3 = Timer("execution", text="[timers] Time ensambling: {:.2f}", logger=logger.info)

        logger.info(f"Hi, lets dl!\n{args}")

    def resolve(self) -> ResolutionResult:
        with HLSResolver(client=self._client, config=client_config_from_args(self.args)) as resolver:
            return resolver.resolve(self.args.url)

    async def async_ex(self) -> DownloadReport:
        try:
            with self.t1:
                self.result = await self.sync_to_async(self.resolve)()

            self.hlsdl = AsyncHLSDownloader(self.args, self.result, client=self._async_client)

            with self.t2:
                self.report = await self.hlsdl.fetch_async()
            logger.info(f"[async_ex] {self.hlsdl.print_hookup()}")

            with self.t3:
                await self.hlsdl.ensamble_file()
            logger.info(f"[async_ex] {self.hlsdl.print_hookup()}")
            return self.report
        finally:
            self.close()
            logger.info("[async_ex] BYE")

    def close(self):
        if self.hlsdl:
            self.hlsdl.close()
        self.ex_winit.shutdown(wait=False)

    def get_results_info(self) -> bool:
        if not self.report:
            logger.error("[results] nothing downloaded")
            return False

        col = shutil.get_terminal_size().columns
        _report = self.report
        logger.info(
            f"Total frags [{_report.n_segments}]\n"
            + f"DL OK [{_report.n_segments - len(_report.failed)}]\n"
            + f"Failed [{len(_report.failed)}]\nSkipped when ensambling [{len(_report.skipped)}]\n"
            + f"Size DL [{naturalsize(_report.down_size)}]\n"
            + f"File [{_report.filename}] [{naturalsize(_report.filesize)}]"
        )

        if _report.failed or _report.skipped:
            _data = [
                [res.index, res.attempts, res.status, res.url, res.error or ""]
                for res in _report.failed
            ] + [
                [index, "", "skipped", "", ""]
                for index in _report.skipped
                if index not in {res.index for res in _report.failed}
            ]
            _tab = tabulate(
                _data,
                headers=["Frag", "Tries", "Status", "URL", "Error"],
                maxcolwidths=[None, None, None, col // 3, col // 3],
                tablefmt="simple",
            )
            logger.warning(f"%no%\n\n{_tab}\n\n")

        return _report.ok
