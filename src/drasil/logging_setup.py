from __future__ import annotations

import logging


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    # discord.py is chatty at INFO during gateway reconnects
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("drasil").setLevel(getattr(logging, level.upper(), logging.INFO))
