# backend/ram_api/__main__.py
import uvicorn

from .settings import get_settings


def main():
    settings = get_settings()
    uvicorn.run("ram_api.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
