"""
Operator prompts that leave the event loop running.

input() and getpass() block until the operator answers. They run in a
daemon thread so SIGINT and SIGTERM still cancel the run while a question
is open, and an unanswered prompt never holds up interpreter shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


def confirm(question: str) -> bool:
    """Blocking yes/no question on the terminal; anything but yes is no."""
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


async def ask_operator(ask: Callable[[str], T], question: str) -> T:
    """
    Run a blocking prompt without blocking the loop.

    Args:
        ask: Blocking prompt function, e.g. `confirm` or `getpass.getpass`.
        question: Text passed to `ask`.

    Returns:
        Whatever `ask` returned.

    Raises:
        asyncio.CancelledError: If the run is cancelled while waiting. The
            prompt thread is abandoned.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = loop.create_future()

    def settle(setter: Callable[[Any], None], value: Any) -> None:
        if not future.done():
            setter(value)

    def worker() -> None:
        try:
            answer = ask(question)
        except Exception as e:
            outcome: tuple[Callable[[Any], None], Any] = (future.set_exception, e)
        else:
            outcome = (future.set_result, answer)
        # The loop may already be closed when the answer comes too late
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(settle, *outcome)

    threading.Thread(target=worker, name="operator-prompt", daemon=True).start()
    return await future
