import uvicorn

from .config import settings
from .logging import configure_logging


def main() -> None:
    configure_logging(settings.log_level)
    uvicorn.run("paygate.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
