"""Run the gateway with uvicorn: ``python -m lti_gateway``."""

from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("lti_gateway.app:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
