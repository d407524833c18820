from __future__ import annotations

from logging import getLogger
from typing import Any, Optional, Union

from quart import Quart

from graphsession.driver import Auth, init
from graphsession.extension.statistics import (
    PoolStatisticsMiddleware,
    display_statistics,
)

logger = getLogger("quart.app")


class Default:
    ...


_default = Default()


class QuartGraphExtension:
    """Open a process-wide driver while a Quart app is serving

    Handlers fetch it with ``graphsession.get_driver()``.
    """

    def __init__(
        self,
        url: str,
        auth: Auth = None,
        *,
        app: Optional[Quart] = None,
        verify_connectivity: bool = False,
        counters: Union[Default, bool] = _default,
        **config: Any,
    ):
        self.url = url
        self.auth = auth
        self.config = config
        self.verify_connectivity = verify_connectivity
        self.counters = counters
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Quart) -> None:
        @app.while_serving
        async def lifespan():
            driver = init(self.url, self.auth, **self.config)
            if self.verify_connectivity:
                await driver.verify_connectivity()

            yield

            await driver.close()

        if display_statistics(self.counters):
            app.asgi_app = PoolStatisticsMiddleware(  # type: ignore
                app.asgi_app, logger
            )
