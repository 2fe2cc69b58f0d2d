import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///data/marketplace.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret-key-change-me')

    # Dev mode relaxes the startup checks below
    DEV_MODE = os.environ.get('DEV_MODE', 'false').lower() in ('true', '1', 'yes')

    # Chain (Base Sepolia)
    RPC_URL = os.environ.get('RPC_URL', '')
    CHAIN_ID = int(os.environ.get('CHAIN_ID', '84532'))
    CHAIN_NAME = os.environ.get('CHAIN_NAME', 'base-sepolia')
    ESCROW_CONTRACT_ADDRESS = os.environ.get('ESCROW_CONTRACT_ADDRESS', '')
    SETTLE_AIRDROP_ADDRESS = os.environ.get('SETTLE_AIRDROP_ADDRESS', '')
    TX_RECEIPT_TIMEOUT = int(os.environ.get('TX_RECEIPT_TIMEOUT', '60'))

    # Metadata storage (Pinata with local fallback)
    PINATA_JWT = os.environ.get('PINATA_JWT', '')
    PINATA_API_URL = os.environ.get('PINATA_API_URL', 'https://api.pinata.cloud')
    PINATA_GATEWAY_URL = os.environ.get('PINATA_GATEWAY_URL', 'https://gateway.pinata.cloud/ipfs')
    IPFS_LOCAL_PATH = os.environ.get('IPFS_LOCAL_PATH', './data/ipfs')
    METADATA_FETCH_TIMEOUT = int(os.environ.get('METADATA_FETCH_TIMEOUT', '5'))

    # Event indexer
    INDEXER_ENABLED = os.environ.get('INDEXER_ENABLED', 'true').lower() in ('true', '1', 'yes')
    INDEXER_POLL_SECONDS = int(os.environ.get('INDEXER_POLL_SECONDS', '15'))
    INDEXER_CHUNK_SIZE = int(os.environ.get('INDEXER_CHUNK_SIZE', '2000'))
    INDEXER_LOOKBACK_BLOCKS = int(os.environ.get('INDEXER_LOOKBACK_BLOCKS', '10000'))

    # Referral bonuses credited to one referrer stop growing at this total
    REFERRAL_EARNINGS_CAP = int(os.environ.get('REFERRAL_EARNINGS_CAP', '1000'))

    # Public base URL used in referral links and the skill file
    API_URL = os.environ.get('API_URL', 'https://clawgle.xyz')
    PORT = int(os.environ.get('PORT', '3000'))

    @classmethod
    def validate_production(cls):
        """Startup check: the state cache needs SQLite (FTS5 shadow index)."""
        if not cls.SQLALCHEMY_DATABASE_URI.startswith('sqlite'):
            raise RuntimeError(
                "FATAL: the state cache requires SQLite with FTS5. "
                "Set DATABASE_URL to a sqlite:/// path."
            )
        if not cls.DEV_MODE and cls.SECRET_KEY == 'dev-secret-key-change-me':
            raise RuntimeError(
                "FATAL: SECRET_KEY must be changed from default in production. "
                "Set FLASK_SECRET_KEY environment variable."
            )
