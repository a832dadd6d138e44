import logging

from dbpools.core.datasources import DataSources, dispose_datasources, get_datasources
from dbpools.core.errors import ConfigurationError
from dbpools.core.health import readiness_check

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init(datasources: DataSources) -> None:
    ok, failures = readiness_check(datasources)
    if not ok:
        raise ConfigurationError(f"datasources not ready: {', '.join(failures)}")
    for pool in datasources:
        logger.info("%s ready: %s", pool.name, pool.stats())


def main() -> None:
    logger.info("Initializing datasources")
    try:
        init(get_datasources())
    finally:
        dispose_datasources()
    logger.info("Datasources finished initializing")


if __name__ == "__main__":
    main()
