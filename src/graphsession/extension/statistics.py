from dataclasses import asdict, fields
from typing import Any

from graphsession.pool import PoolStatistics
from graphsession.registry import DriverRegistry

COLUMNS = tuple(f.name for f in fields(PoolStatistics))


class PoolStatisticsMiddleware:
    def __init__(self, app, logger):
        self.app = app
        self.logger = logger

    async def __call__(self, scope, receive, send):
        response = await self.app(scope, receive, send)
        if scope["type"] == "http":
            log_statistics_report(self.logger)

        return response


def display_statistics(counters: Any) -> bool:
    if isinstance(counters, bool):
        return counters
    return False


def log_statistics_report(logger, *_):
    drivers = sorted(DriverRegistry(), key=lambda d: d.address.key)
    if not drivers:
        logger.warning("No initialized drivers found")
        return

    column_size = max(map(len, COLUMNS))
    names = [driver.address.key for driver in drivers]
    max_name = max(map(len, [*names, "TOTALS"]))
    headers = " | ".join(
        [" " * max_name, *[column.rjust(column_size) for column in COLUMNS]]
    )
    statistics = [asdict(driver.pool.statistics) for driver in drivers]
    row_data = [
        " | ".join(
            [
                name.rjust(max_name),
                *[str(stats[column]).rjust(column_size) for column in COLUMNS],
            ]
        )
        for name, stats in zip(names, statistics)
    ]
    rows = "\n".join(row_data)
    divider = "=" * len(row_data[0])
    totals = " | ".join(
        [
            "TOTALS".rjust(max_name),
            *[
                str(sum(stats[column] for stats in statistics)).rjust(
                    column_size
                )
                for column in COLUMNS
            ],
        ]
    )
    title = "CONNECTION POOLS".center(len(divider))

    logger.info(
        f"Pool Statistics Report\n\n{title}\n\n{headers}\n"
        f"{rows}\n{divider}\n{totals}\n\n"
    )
