import logging

ROOT_LOGGER = "rollout_engine"


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO),
                        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')


def get_logger(name=None):
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)
