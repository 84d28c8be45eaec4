import time
from typing import Callable

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send


class TimingMiddleware:
    """
    Pure ASGI middleware stamping every HTTP response with

    - ``X-Response-Time-Ms``: time from receiving the request to starting the
      response, in milliseconds.
    - ``X-Served-By``: registry instance id of the answering process, which
      tells replicas of one service apart behind a load balancer.

    The instance id is read through *instance_id* on each request because it
    only exists once the runtime has registered, after the app is built.
    """

    def __init__(self, app: ASGIApp, instance_id: Callable[[], str | None] = lambda: None) -> None:
        self.app = app
        self.instance_id = instance_id

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()

        async def stamp(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers.append("x-response-time-ms", f"{(time.perf_counter() - started) * 1000:.2f}")
                served_by = self.instance_id()
                if served_by:
                    headers.append("x-served-by", served_by)
            await send(message)

        await self.app(scope, receive, stamp)
