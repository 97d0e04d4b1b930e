import structlog
import uvicorn

from therapy_workflow.api import create_app
from therapy_workflow.config import settings
from therapy_workflow.database import load_sample_data
from therapy_workflow.logging_config import configure_logging

log = structlog.get_logger()

configure_logging()

app = create_app()


@app.on_event("startup")
async def startup_event() -> None:
    load_sample_data()
    log.info("sample_data_loaded", app=settings.app_name, version=settings.version)


if __name__ == "__main__":
    uvicorn.run(
        "therapy_workflow.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
