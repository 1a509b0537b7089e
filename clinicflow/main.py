# clinicflow/main.py - Process lifecycle for the clinic operations core
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.orm import sessionmaker

from . import database
from .config import Settings, get_settings
from .core.logging import setup_logging
from .services.pdf_service import PdfRenderEngine
from .services.storage_service import ArtifactStorageManager


class ClinicServices:
    """The process-wide resources, built once and handed to callers explicitly."""

    def __init__(self, settings: Settings, session_factory: sessionmaker,
                 storage: ArtifactStorageManager, pdf_engine: PdfRenderEngine):
        self.settings = settings
        self.session_factory = session_factory
        self.storage = storage
        self.pdf_engine = pdf_engine

    def session(self):
        return self.session_factory()


@contextmanager
def lifespan(settings: Optional[Settings] = None) -> Iterator[ClinicServices]:
    settings = settings or get_settings()
    log = setup_logging(settings.log_level, settings.json_logs)

    owns_engine = settings.database_url != database.engine.url.render_as_string(hide_password=False)
    if owns_engine:
        db_engine = database.build_engine(settings.database_url)
        session_factory = database.make_session_factory(db_engine)
    else:
        db_engine = database.engine
        session_factory = database.SessionLocal
    database.create_tables(bind=db_engine)

    pdf_engine = PdfRenderEngine.from_settings(settings)
    services = ClinicServices(
        settings=settings,
        session_factory=session_factory,
        storage=ArtifactStorageManager.from_settings(settings),
        pdf_engine=pdf_engine,
    )
    log.info("clinic_core_started", app=settings.app_name, version=settings.app_version,
             environment=settings.environment)
    try:
        yield services
    finally:
        pdf_engine.shutdown()
        if owns_engine:
            db_engine.dispose()
        log.info("clinic_core_stopped", app=settings.app_name)
