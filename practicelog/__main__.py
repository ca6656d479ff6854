"""Run the API server: ``python -m practicelog``."""
import uvicorn

from .config import PORT


def main() -> None:
    uvicorn.run("practicelog.main:app", host="0.0.0.0", port=PORT, log_config=None)


if __name__ == "__main__":
    main()
