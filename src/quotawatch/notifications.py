from typing import Protocol

import structlog

logger = structlog.get_logger()


class Notifier(Protocol):
    """
    fire-and-forget alert delivery. Implementations must not raise.
    """

    def notify(
        self,
        title: "str",
        message: "str",
        action: "str | None" = None,
        argument: "str | None" = None,
    ) -> "None": ...


class NoOpNotifier:
    def notify(
        self,
        title: "str",
        message: "str",
        action: "str | None" = None,
        argument: "str | None" = None,
    ) -> "None":
        pass


class LogNotifier:
    """
    writes every alert to the log, for headless hosts.
    """

    def notify(
        self,
        title: "str",
        message: "str",
        action: "str | None" = None,
        argument: "str | None" = None,
    ) -> "None":
        logger.info(
            "notification",
            title=title,
            message=message,
            action=action,
            argument=argument,
        )


def create_notifier(kind: "str") -> "Notifier":
    if kind == "log":
        return LogNotifier()
    if kind == "noop":
        return NoOpNotifier()
    raise ValueError(f"unknown notifier {kind!r}, expected 'noop' or 'log'")
