"""Run the encoder-link service with uvicorn."""
from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("ENCODER_LINK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("ENCODER_LINK_HOST", "0.0.0.0")
    port = int(os.getenv("ENCODER_LINK_PORT", "8080"))
    uvicorn.run("encoder_link.app:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    main()
