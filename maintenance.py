import asyncio
import logging

from advanced_config import CLEANUP_SETTINGS
from config import DATABASE_URL
from database import Database
from share_links import ShareLinkLedger

logger = logging.getLogger(__name__)


class CleanupManager:
    def __init__(self, links: ShareLinkLedger, interval: int = CLEANUP_SETTINGS["sweep_interval"]):
        self.links = links
        self.interval = interval

    async def start_cleanup(self):
        """Deactivate expired share links forever, once per interval"""
        while True:
            try:
                self.run_once()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cleanup: {e}")
                await asyncio.sleep(CLEANUP_SETTINGS["retry_delay"])

    def run_once(self):
        count = self.links.cleanup_expired()
        if count:
            logger.info(f"Cleaned up {count} expired links")
        return count


def main():
    """Run maintenance tasks once"""
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO
    )
    db = Database(DATABASE_URL)
    try:
        logger.info("Starting maintenance tasks...")
        count = CleanupManager(ShareLinkLedger(db)).run_once()
        logger.info(f"Maintenance tasks completed: {count} links deactivated")
    except Exception as e:
        logger.error(f"Error during maintenance: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
