import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

# Shared by every module; messages carry a "[component]" prefix instead of
# per-module loggers.
logger = logging.getLogger("mail_archiver")
