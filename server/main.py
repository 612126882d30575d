import logging
import uvicorn
from . import config


def run():
    settings = config.get_settings()
    logging.basicConfig(level=getattr(logging, str(settings.log_level).upper(), logging.INFO))
    uvicorn.run("server.api:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
