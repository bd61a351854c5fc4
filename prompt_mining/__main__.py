"""Run the relay API with uvicorn: ``python -m prompt_mining``."""

from __future__ import annotations

import os

import uvicorn

from .app import create_app


def main() -> None:
    host = os.getenv("PM_HOST", "0.0.0.0")
    port = int(os.getenv("PM_PORT", "3000"))
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
