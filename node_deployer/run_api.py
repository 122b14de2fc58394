# node_deployer/run_api.py
"""Run the REST API with uvicorn."""

import logging

import uvicorn

from node_deployer.config import get_settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    settings = get_settings()
    logger.info(f"Starting Node Deployer API on {settings.api_host}:{settings.api_port}")
    uvicorn.run("node_deployer.api.main:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
