"""Kernel time – Clock port."""
from cachesync.kernel.time.clock import Clock, SystemClock, utc_now

__all__ = ["Clock", "SystemClock", "utc_now"]
