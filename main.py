import uvicorn

from fleet.app import create_app
from fleet.logs import setup_logging
from fleet.settings import settings

setup_logging(settings)
app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_config=None)
