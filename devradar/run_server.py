"""Run the presence service with uvicorn: ``python -m devradar.run_server``."""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "devradar.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info"),
    )


if __name__ == "__main__":
    main()
