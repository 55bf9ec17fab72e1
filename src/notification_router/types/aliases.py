"""Type aliases using PEP 695 syntax.

This module defines callable shapes that components accept by injection,
so tests can substitute deterministic clocks, sleepers and id factories.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime

# Returns the current timezone-aware time
type Clock = Callable[[], datetime]

# Awaitable pause, asyncio.sleep by default
type Sleeper = Callable[[float], Awaitable[None]]

# Produces unique identifiers (job keys, event ids, batch ids)
type IdFactory = Callable[[], str]

# Invoked by the scheduler when a job fires; True when delivery succeeded
type JobExecutor = Callable[[int], Awaitable[bool]]
