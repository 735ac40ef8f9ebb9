"""CLI entrypoint for running the FastAPI app with uvicorn."""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    """Run the ASGI server."""

    uvicorn.run(
        "streamer.app:create_app",
        factory=True,
        host=os.getenv("STREAMER_HOST", "0.0.0.0"),
        port=int(os.getenv("STREAMER_PORT", "18881")),
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
