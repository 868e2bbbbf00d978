"""Photo evidence storage with signed upload URLs.

The API signs an object path, the client uploads the file to the signed URL,
then registers the stored path against its enrollment. Objects live under
UPLOAD_FOLDER using the signed path as-is.
"""
import logging
import os

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.utils import secure_filename

from errors import ValidationError

logger = logging.getLogger(__name__)

BUCKET = 'enrollment-images'
DEFAULT_UPLOAD_TTL = 2 * 60 * 60  # seconds


def validate_object_path(path):
    """Accept relative paths such as '12/1700000000000-0-photo.jpg'"""
    if not isinstance(path, str) or not path.strip():
        raise ValidationError('Path is required')
    path = path.strip()
    if path.startswith('/') or '\\' in path:
        raise ValidationError('Invalid storage path')
    parts = path.split('/')
    for part in parts:
        if not part or part != secure_filename(part):
            raise ValidationError('Invalid storage path')
    return '/'.join(parts)


def _serializer(secret_key):
    return URLSafeTimedSerializer(secret_key, salt=BUCKET)


def sign_upload(path, secret_key):
    """Return (path, token) for a one-off direct upload"""
    path = validate_object_path(path)
    return path, _serializer(secret_key).dumps({'path': path})


def verify_token(token, secret_key, max_age=DEFAULT_UPLOAD_TTL):
    try:
        data = _serializer(secret_key).loads(token, max_age=max_age)
    except SignatureExpired:
        raise ValidationError('Upload URL has expired')
    except BadSignature:
        raise ValidationError('Invalid upload token')
    return validate_object_path(data.get('path'))


def object_location(folder, path):
    return os.path.join(folder, *validate_object_path(path).split('/'))


def object_exists(folder, path):
    return os.path.isfile(object_location(folder, path))


def save_upload(folder, path, data):
    """Write the object; existing objects are never overwritten"""
    if not data:
        raise ValidationError('File is empty')
    location = object_location(folder, path)
    os.makedirs(os.path.dirname(location), exist_ok=True)
    try:
        with open(location, 'xb') as handle:
            handle.write(data)
    except FileExistsError:
        raise ValidationError('The resource already exists')
    logger.info('Stored %s (%d bytes)', path, len(data))
    return len(data)
