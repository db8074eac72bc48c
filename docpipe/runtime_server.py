"""Runtime launcher for the document pipeline service.

The pipeline keeps its queue and worker pool in process memory, so the
service runs a single uvicorn worker.
"""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    port = int(os.getenv("PORT", "8080"))
    app_path = os.getenv("FASTAPI_APP", "docpipe.main:create_app")
    uvicorn.run(
        app_path,
        host="0.0.0.0",
        port=port,
        factory=True,
        workers=1,
        lifespan="on",
    )


if __name__ == "__main__":  # pragma: no cover - exercised in runtime
    main()
