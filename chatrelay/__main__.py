from __future__ import annotations

import os


def run() -> None:
    import uvicorn

    uvicorn.run(
        "chatrelay.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
