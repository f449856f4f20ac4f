"""Environment detection utilities for production vs development"""

import os
import logging

logger = logging.getLogger(__name__)

def get_public_domain() -> str:
    """
    Get the public domain customers are redirected back to after checkout

    Returns:
        str: The domain serving the customer portal
    """
    if is_production_environment():
        domain = os.getenv('PRODUCTION_DOMAIN', '404codelab.com')
        logger.info(f"🌍 Production environment detected - using domain: {domain}")
        return domain

    dev_domain = os.getenv('DEV_DOMAIN')
    if not dev_domain:
        logger.warning("⚠️ No development domain found, using localhost fallback")
        dev_domain = 'localhost:5000'

    logger.info(f"🔧 Development environment detected - using domain: {dev_domain}")
    return dev_domain

def get_public_base_url() -> str:
    """
    Get the base URL used for checkout success and cancel redirects

    Returns:
        str: Base URL without trailing slash
    """
    domain = get_public_domain()
    protocol = 'http' if domain.startswith('localhost') else 'https'
    return f"{protocol}://{domain}"

def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if in production, False if in development
    """
    return os.getenv('DEPLOYMENT_ENV', '').lower() == 'production'
