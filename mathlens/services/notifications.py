"""Transient, dismissible user notifications (toasts)."""

from __future__ import annotations

import asyncio
import itertools
import logging

from pydantic import BaseModel

from mathlens.domain.enums import ToastType

logger = logging.getLogger(__name__)


class Toast(BaseModel):
    id: int
    message: str
    type: ToastType
    timeout: float

    model_config = {"frozen": True}


class NotificationCenter:
    """Holds visible toasts; each one dismisses itself after its timeout."""

    def __init__(self, default_timeout: float = 2.6) -> None:
        self._default_timeout = default_timeout
        self._ids = itertools.count(1)
        self._toasts: list[Toast] = []

    @property
    def toasts(self) -> list[Toast]:
        return list(self._toasts)

    def show(
        self,
        message: str,
        type: ToastType = ToastType.INFO,
        timeout: float | None = None,
    ) -> Toast:
        toast = Toast(
            id=next(self._ids),
            message=message,
            type=type,
            timeout=self._default_timeout if timeout is None else timeout,
        )
        self._toasts.append(toast)
        logger.log(
            logging.WARNING if type is ToastType.ERROR else logging.INFO,
            "Notification [%s]: %s", type.value, message,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: stays until dismissed explicitly.
            return toast
        loop.call_later(toast.timeout, self.dismiss, toast.id)
        return toast

    def dismiss(self, toast_id: int) -> None:
        self._toasts = [t for t in self._toasts if t.id != toast_id]
