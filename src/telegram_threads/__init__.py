"""Telegram Threads - reply-thread reconstruction over a Telethon client."""

import warnings

# Suppress Telethon's experimental async sessions warning
warnings.filterwarnings(
    "ignore",
    message=".*async sessions support is an experimental feature.*",
    category=UserWarning,
)

__version__ = "1.0.0"
