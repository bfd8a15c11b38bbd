import uvicorn

from src.core.settings import get_settings


# PUBLIC_INTERFACE
def main() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("src.api.main:app", host=settings.api.HOST, port=settings.api.PORT)


if __name__ == "__main__":
    main()
