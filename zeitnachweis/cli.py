import uvicorn

from zeitnachweis.settings import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "zeitnachweis.main:app",
        host="0.0.0.0",
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
