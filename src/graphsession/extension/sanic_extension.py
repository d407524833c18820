from typing import Any, Union

from sanic.helpers import Default, _default
from sanic.log import logger
from sanic_ext import Extend
from sanic_ext.extensions.base import Extension

from graphsession.driver import Auth, Driver, get_driver, init
from graphsession.extension.statistics import (
    display_statistics,
    log_statistics_report,
)


class SanicGraphExtension(Extension):
    name = "graphsession"

    def __init__(
        self,
        url: str,
        auth: Auth = None,
        *,
        verify_connectivity: bool = False,
        counters: Union[Default, bool] = _default,
        **config: Any,
    ):
        self.url = url
        self.auth = auth
        self.config_kwargs = config
        self.verify_connectivity = verify_connectivity
        self.counters = counters

    def startup(self, bootstrap: Extend) -> None:
        @self.app.before_server_start
        async def setup(_):
            driver = init(self.url, self.auth, **self.config_kwargs)
            logger.info(f"Opening {driver}")
            if self.verify_connectivity:
                await driver.verify_connectivity()

        @self.app.after_server_stop
        async def shutdown(_):
            driver = get_driver(self.url)
            logger.info(f"Closing {driver}")
            await driver.close()

        bootstrap.add_dependency(Driver, lambda *_: get_driver(self.url))

        if display_statistics(self.counters):

            @self.app.on_response
            async def display(*_):
                log_statistics_report(logger)

    def render_label(self):
        return f"[{self.url}]"
