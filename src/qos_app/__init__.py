import logging

from .main import main, run

logging.getLogger("qos_app").addHandler(logging.NullHandler())
