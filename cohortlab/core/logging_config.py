import logging

from cohortlab.core.settings import config_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configures root logging once for the API process."""
    logging.basicConfig(
        level=(level or config_settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
    # SQL echo is far too chatty at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
