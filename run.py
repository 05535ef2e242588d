import os
import logging

from advanced_config import PATH_SETTINGS
from bot import main
from init_db import init_database

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if __name__ == '__main__':
    # Create required directories
    for directory in PATH_SETTINGS.values():
        os.makedirs(directory, exist_ok=True)
        logger.info(f"Created directory: {directory}")

    init_database()
    main()
