"""Command line interface for running the API server."""
import logging

import uvicorn

from config import settings_conf

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def main():
    """Run the API server. The reconciler runs inside the app lifespan."""
    if settings_conf['db_url'].startswith('memory://'):
        logger.warning("Running with the in-memory store; data is lost on restart")

    uvicorn.run(
        "api:app",
        host=settings_conf['api_host'],
        port=settings_conf['api_port'],
        log_level="info"
    )

if __name__ == "__main__":
    main()
