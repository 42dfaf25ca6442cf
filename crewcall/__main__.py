import argparse

import uvicorn

from crewcall.api import create_app
from crewcall.config import settings
from crewcall.logging_config import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the CrewCall API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    configure_logging(settings.log_level, json=settings.log_json)
    uvicorn.run(
        create_app(settings),
        host=args.host,
        port=args.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
