"""Login strategies for the staff dashboard.

Which strategy runs is decided by AUTH_MODE alone:

* ``credentials`` - one account configured through DASHBOARD_EMAIL and
  DASHBOARD_PASSWORD (or DASHBOARD_PASSWORD_HASH), role manager.
* ``stub`` - no credential check, every login gets the fixed manager identity.
"""
import logging
import time
from collections import defaultdict

from werkzeug.security import check_password_hash, generate_password_hash

security_logger = logging.getLogger('security')

MANAGER_ROLE = 'manager'

# Protection against brute force
MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION = 300  # seconds


class AuthConfigError(Exception):
    pass


class CredentialAuth:
    """Check credentials against the single configured account"""
    requires_credentials = True

    def __init__(self, email, password=None, password_hash=None,
                 full_name='Manager', user_id='manager'):
        if not email or not (password or password_hash):
            raise AuthConfigError(
                'DASHBOARD_EMAIL and DASHBOARD_PASSWORD (or DASHBOARD_PASSWORD_HASH) must be set'
            )
        self.email = email.strip().lower()
        self.password_hash = password_hash or generate_password_hash(password)
        self.full_name = full_name
        self.user_id = user_id

    def identity(self):
        return {
            'id': self.user_id,
            'email': self.email,
            'role': MANAGER_ROLE,
            'full_name': self.full_name,
        }

    def authenticate(self, email, password):
        if (email or '').strip().lower() != self.email:
            return None
        if not check_password_hash(self.password_hash, password or ''):
            return None
        return self.identity()


class StubAuth:
    """Fixed manager identity for builds without a login screen"""
    requires_credentials = False

    def __init__(self, email='manager@localhost', full_name='Manager', user_id='manager'):
        self.email = email
        self.full_name = full_name
        self.user_id = user_id

    def authenticate(self, email, password):
        return {
            'id': self.user_id,
            'email': self.email,
            'role': MANAGER_ROLE,
            'full_name': self.full_name,
        }


def get_auth_strategy(config):
    """Build the strategy selected by config['AUTH_MODE']"""
    mode = (config.get('AUTH_MODE') or 'credentials').strip().lower()
    full_name = config.get('DASHBOARD_NAME') or 'Manager'
    if mode == 'stub':
        return StubAuth(email=config.get('DASHBOARD_EMAIL') or 'manager@localhost',
                        full_name=full_name)
    if mode == 'credentials':
        return CredentialAuth(
            config.get('DASHBOARD_EMAIL'),
            password=config.get('DASHBOARD_PASSWORD'),
            password_hash=config.get('DASHBOARD_PASSWORD_HASH'),
            full_name=full_name,
        )
    raise AuthConfigError(f'Unknown AUTH_MODE: {mode}')


class LoginThrottle:
    """Failed login counter per IP address with a temporary lockout"""

    def __init__(self, max_attempts=MAX_LOGIN_ATTEMPTS, lockout_duration=LOCKOUT_DURATION,
                 clock=time.time):
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.clock = clock
        self.attempts = defaultdict(lambda: {'count': 0, 'lockout_until': 0})

    def check(self, ip_address):
        """Return (allowed, seconds_remaining) for the address"""
        current_time = self.clock()
        attempt_data = self.attempts[ip_address]

        if attempt_data['lockout_until'] > current_time:
            return False, int(attempt_data['lockout_until'] - current_time)

        # Lockout expired
        if 0 < attempt_data['lockout_until'] <= current_time:
            self.attempts[ip_address] = {'count': 0, 'lockout_until': 0}

        return True, 0

    def record_failure(self, ip_address):
        """Count a failed attempt; True when this one triggered the lockout"""
        self.attempts[ip_address]['count'] += 1

        if self.attempts[ip_address]['count'] >= self.max_attempts:
            self.attempts[ip_address]['lockout_until'] = self.clock() + self.lockout_duration
            security_logger.warning(
                'IP %s locked out for %ss after %s failed attempts',
                ip_address, self.lockout_duration, self.max_attempts
            )
            return True

        return False

    def attempts_left(self, ip_address):
        return max(0, self.max_attempts - self.attempts[ip_address]['count'])

    def reset(self, ip_address):
        self.attempts.pop(ip_address, None)

    def clear(self):
        self.attempts.clear()
