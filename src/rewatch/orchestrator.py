from __future__ import annotations

import signal
from asyncio import Queue

from rich.console import Console

from rewatch.messages import Message, Quit
from rewatch.registry import Registry
from rewatch.renderer import Renderer


class Orchestrator:
    def __init__(self, registry: Registry, console: Console):
        self.registry = registry
        self.console = console

        self.renderer = Renderer(registry=registry, console=console)

        self.inbox: Queue[Message] = registry.subscribe()

    async def run(self) -> None:
        if not self.registry.rules():
            return

        with self.renderer:
            try:
                await self.registry.start_all()

                await self.handle_messages()
            finally:
                self.renderer.handle_shutdown_start()

                try:
                    await self.registry.stop_all()
                finally:
                    self.drain()

                    self.renderer.handle_shutdown_end()

    async def handle_messages(self) -> None:
        signal.signal(signal.SIGINT, lambda sig, frame: self.inbox.put_nowait(Quit()))

        while True:
            match message := await self.inbox.get():
                case Quit():
                    return

            self.renderer.handle_message(message)

    def drain(self) -> None:
        while not self.inbox.empty():
            message = self.inbox.get_nowait()
            if not isinstance(message, Quit):
                self.renderer.handle_message(message)
