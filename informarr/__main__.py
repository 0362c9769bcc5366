"""Entry point: python -m informarr"""
import uvicorn

from informarr.config import get_config
from informarr.main import create_app


def main() -> None:
    app = create_app()
    config = get_config()
    uvicorn.run(app, host=config.app.host, port=config.app.port, log_config=None)


if __name__ == "__main__":
    main()
