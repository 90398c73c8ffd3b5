"""
Asset storage for rendered QR images.

Uses Cloudflare R2 (any S3-compatible endpoint) through boto3 when the
R2_* settings are present, otherwise writes files under LOCAL_ASSET_FOLDER
which the app serves at /assets/<key>.
"""
import os
import logging
import threading
from typing import Optional
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app
from werkzeug.utils import safe_join

from error_handlers import DependencyError

logger = logging.getLogger(__name__)

ASSET_CACHE_CONTROL = "public, max-age=31536000, immutable"

_store_lock = threading.Lock()


class AssetStoreError(DependencyError):
    error = 'Asset storage failed'


def product_qr_key(serial_code: str) -> str:
    return f"qr/{serial_code.upper()}.png"


def gram_qr_key(uniq_code: str) -> str:
    return f"qr-gram/{uniq_code.upper()}.png"


class AssetStore:
    """Put and delete binary assets, returning public URLs"""

    def __init__(self, client=None, bucket: Optional[str] = None, public_url: Optional[str] = None,
                 local_folder: Optional[str] = None, url_prefix: str = '/assets'):
        self.client = client
        self.bucket = bucket
        self.public_url = (public_url or '').rstrip('/')
        self.local_folder = local_folder
        self.url_prefix = url_prefix.rstrip('/')

        if self.client is None and not self.local_folder:
            raise ValueError("AssetStore needs either an S3 client or a local folder")

    @property
    def mode(self) -> str:
        return 'R2' if self.client is not None else 'LOCAL'

    @classmethod
    def from_config(cls, config) -> 'AssetStore':
        """Build a store from Flask config, preferring R2 when fully configured"""
        r2_settings = (
            config.get('R2_ENDPOINT'),
            config.get('R2_BUCKET'),
            config.get('R2_ACCESS_KEY_ID'),
            config.get('R2_SECRET_ACCESS_KEY'),
            config.get('R2_PUBLIC_URL'),
        )
        if all(r2_settings):
            client = boto3.client(
                's3',
                endpoint_url=config['R2_ENDPOINT'],
                aws_access_key_id=config['R2_ACCESS_KEY_ID'],
                aws_secret_access_key=config['R2_SECRET_ACCESS_KEY'],
                region_name='auto',
            )
            logger.info(f"Asset store: R2 bucket {config['R2_BUCKET']}")
            return cls(client=client, bucket=config['R2_BUCKET'], public_url=config['R2_PUBLIC_URL'])

        folder = config.get('LOCAL_ASSET_FOLDER')
        logger.info(f"Asset store: local folder {folder}")
        return cls(local_folder=folder, url_prefix=config.get('LOCAL_ASSET_URL_PREFIX', '/assets'))

    def url_for(self, key: str) -> str:
        if self.mode == 'R2':
            return f"{self.public_url}/{key}"
        return f"{self.url_prefix}/{key}"

    def key_from_url(self, url: Optional[str]) -> Optional[str]:
        """Recover the object key from a URL this store issued, or None"""
        if not url:
            return None
        base = self.public_url if self.mode == 'R2' else self.url_prefix
        if base and url.startswith(base + '/'):
            return url[len(base) + 1:]
        return None

    def local_path(self, key: str) -> Optional[str]:
        """Filesystem path of a local asset; None if the key escapes the folder"""
        if not self.local_folder:
            return None
        return safe_join(self.local_folder, key)

    def put(self, key: str, data: bytes, content_type: str = 'image/png') -> str:
        """
        Store ``data`` under ``key`` and return its public URL.

        Raises:
            AssetStoreError: the upload or file write failed
        """
        if self.mode == 'R2':
            try:
                self.client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                    CacheControl=ASSET_CACHE_CONTROL,
                )
            except (BotoCoreError, ClientError) as e:
                logger.error(f"R2 upload failed for {key}: {e}")
                raise AssetStoreError(f"Could not store asset {key}", original=e)
            return self.url_for(key)

        path = self.local_path(key)
        if path is None:
            raise AssetStoreError(f"Invalid asset key {key}")
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
        except OSError as e:
            logger.error(f"Local asset write failed for {key}: {e}")
            raise AssetStoreError(f"Could not store asset {key}", original=e)
        return self.url_for(key)

    def delete(self, key: str) -> None:
        """Remove an asset. A missing asset is not an error."""
        if self.mode == 'R2':
            try:
                self.client.delete_object(Bucket=self.bucket, Key=key)
            except (BotoCoreError, ClientError) as e:
                raise AssetStoreError(f"Could not delete asset {key}", original=e)
            return

        path = self.local_path(key)
        if path is None:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise AssetStoreError(f"Could not delete asset {key}", original=e)

    def delete_quietly(self, key: Optional[str]) -> bool:
        """Best-effort delete; failures are logged and reported as False"""
        if not key:
            return False
        try:
            self.delete(key)
            return True
        except AssetStoreError as e:
            logger.warning(f"Best-effort asset cleanup failed for {key}: {e.original or e}")
            return False


def get_asset_store() -> AssetStore:
    """Return the app-wide AssetStore, creating it on first use"""
    app = current_app._get_current_object()
    store = app.extensions.get('asset_store')
    if store is not None:
        return store

    with _store_lock:
        store = app.extensions.get('asset_store')
        if store is None:
            store = AssetStore.from_config(app.config)
            app.extensions['asset_store'] = store
    return store
