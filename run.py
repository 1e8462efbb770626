import logging
import sys

import uvicorn

from driftguard.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("driftguard.log")
    ]
)

logger = logging.getLogger(__name__)

def main():
    """Run the application with uvicorn"""
    logger.info(f"Starting {settings.PROJECT_NAME} in {settings.ENVIRONMENT}")
    uvicorn.run(
        "driftguard.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )

if __name__ == "__main__":
    main()
