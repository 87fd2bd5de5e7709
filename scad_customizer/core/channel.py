"""
Typed message channel between a caller and the compile worker.

Each request runs the orchestrator on its own worker task. The caller iterates
messages:

    log*  then exactly one of  result | error

Orchestrator failures arrive as an ``error`` message. If the worker dies
without producing a terminal message, iteration raises ``ChannelError``
instead. The channel does not serialize requests; callers keep at most one
in flight (the job manager does this with a single worker).
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Protocol, Union

from ..schemas import ErrorMessage, LogLevel, LogMessage, ParameterOverride, ResultMessage
from .errors import ChannelError, ScadCustomizerError
from .engine import LogSink
from .orchestrator import CompileArtifact

logger = logging.getLogger(__name__)

ChannelReply = Union[LogMessage, ResultMessage, ErrorMessage]


class Compiler(Protocol):
    async def compile(
        self,
        source_text: str,
        overrides: list[ParameterOverride] | None = None,
        log: LogSink = ...,
    ) -> CompileArtifact: ...


class CompileChannel:
    def __init__(self, compiler: Compiler):
        self.compiler = compiler

    async def _serve(
        self,
        source_text: str,
        overrides: list[ParameterOverride],
        outbox: asyncio.Queue[ChannelReply],
    ) -> None:
        def sink(text: str, level: LogLevel = LogLevel.info) -> None:
            outbox.put_nowait(LogMessage(text=text, level=level))

        try:
            artifact = await self.compiler.compile(source_text, overrides, sink)
        except ScadCustomizerError as exc:
            outbox.put_nowait(ErrorMessage(message=str(exc), status_code=exc.status_code))
            return
        except Exception as exc:
            logger.exception("compile_worker_error")
            outbox.put_nowait(ErrorMessage(message=f"Unexpected compile error: {exc}"))
            return
        outbox.put_nowait(
            ResultMessage(artifact=artifact.data, exit_code=artifact.exit_code, elapsed=artifact.elapsed)
        )

    async def request(
        self,
        source_text: str,
        overrides: list[ParameterOverride] | None = None,
    ) -> AsyncIterator[ChannelReply]:
        outbox: asyncio.Queue[ChannelReply] = asyncio.Queue()
        worker = asyncio.ensure_future(self._serve(source_text, list(overrides or []), outbox))
        getter: asyncio.Future[ChannelReply] | None = None
        try:
            while True:
                if not outbox.empty():
                    message = outbox.get_nowait()
                elif worker.done():
                    cause = None if worker.cancelled() else worker.exception()
                    raise ChannelError("Compile worker stopped without a result") from cause
                else:
                    getter = asyncio.ensure_future(outbox.get())
                    done, _ = await asyncio.wait({getter, worker}, return_when=asyncio.FIRST_COMPLETED)
                    if getter not in done:
                        getter.cancel()
                        getter = None
                        continue
                    message = getter.result()
                    getter = None

                yield message
                if message.terminal:
                    return
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not worker.done():
                worker.cancel()
                await asyncio.gather(worker, return_exceptions=True)
