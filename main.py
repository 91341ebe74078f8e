# Cardify - trading-card NFT collections with single-use redemption codes
# Application entry point

import logging
import os

from cardify import create_app
from cardify.config import Config
from cardify.models import db

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(Config.LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger("cardify")

app = create_app(Config)


# Main entry point

if __name__ == '__main__':
    with app.app_context():
        # Create all database tables
        db.create_all()

    # Start the Flask application
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    logger.info(f"Starting Cardify on port {port}")
    app.run(host='0.0.0.0', port=port, debug=debug)
