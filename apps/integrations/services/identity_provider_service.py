"""
Identity provider (Keycloak-compatible admin REST API) gateway.

Covers the calls onboarding needs:
- Organization create / delete / lookup by domain
- User create / delete / lookup by email
- Organization membership add / remove

Admin calls authenticate with a client-credentials bearer token that is
cached process-wide and refreshed by one caller at a time.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

import requests
from django.conf import settings

from apps.core.exceptions import (
    IdentityProviderAuthError, IdentityProviderRequestError, OperationCancelled,
)
from apps.core.sentry_utils import add_breadcrumb
from apps.integrations.services.retry import RetryStrategy

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 300
IDEMPOTENT_METHODS = {'GET', 'HEAD', 'PUT', 'DELETE'}


class TokenCache:
    """
    Bearer token cache with single-flight refresh.

    A cached token is reused while ``now < expires_at - margin_seconds``.
    When it is missing or stale, exactly one caller fetches a new token
    while the others wait on the lock and then reuse the result. The lock
    is held only for the token request itself.
    """

    def __init__(self, margin_seconds: float = 30, clock: Callable[[], float] = time.monotonic):
        self.margin_seconds = margin_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # (token, expires_at) swapped as one tuple so readers never see a torn pair.
        self._entry: Optional[Tuple[str, float]] = None

    def _fresh_token(self) -> Optional[str]:
        entry = self._entry
        if entry is None:
            return None
        token, expires_at = entry
        if self._clock() < expires_at - self.margin_seconds:
            return token
        return None

    def get(self, fetch: Callable[[], Tuple[str, int]]) -> str:
        """
        Return a valid token, calling ``fetch`` only when none is cached.

        ``fetch`` returns ``(token, expires_in_seconds)``. Its exceptions
        propagate to the caller that triggered it; waiting callers retry the
        fetch themselves.
        """
        token = self._fresh_token()
        if token is not None:
            return token

        with self._lock:
            token = self._fresh_token()
            if token is not None:
                return token

            token, expires_in = fetch()
            self._entry = (token, self._clock() + expires_in)
            return token

    def invalidate(self, token: Optional[str] = None):
        """Drop the cached token, or only ``token`` if it is still the cached one."""
        with self._lock:
            if token is None or (self._entry is not None and self._entry[0] == token):
                self._entry = None


_token_caches: Dict[Tuple[str, str, str], TokenCache] = {}
_token_caches_lock = threading.Lock()


def get_token_cache(base_url: str, realm: str, client_id: str, margin_seconds: float) -> TokenCache:
    """Return the process-wide cache for one set of client credentials."""
    key = (base_url, realm, client_id)
    with _token_caches_lock:
        cache = _token_caches.get(key)
        if cache is None:
            cache = TokenCache(margin_seconds=margin_seconds)
            _token_caches[key] = cache
        return cache


def reset_token_caches():
    with _token_caches_lock:
        _token_caches.clear()


class IdentityProviderGateway:
    """
    Client for the identity provider admin API.

    Every call has a timeout. Transient failures (timeouts, connection
    errors, 5xx) are retried with exponential backoff; POSTs are only
    retried when the request never reached the provider. An optional
    ``threading.Event`` cancels the call before it is sent and during
    backoff waits.
    """

    def __init__(self, base_url=None, realm=None, client_id=None, client_secret=None,
                 timeout=None, retry: Optional[RetryStrategy] = None,
                 session: Optional[requests.Session] = None,
                 token_cache: Optional[TokenCache] = None):
        self.base_url = (base_url or settings.IDENTITY_PROVIDER_BASE_URL).rstrip('/')
        self.realm = realm or settings.IDENTITY_PROVIDER_REALM
        self.client_id = client_id or settings.IDENTITY_PROVIDER_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.IDENTITY_PROVIDER_CLIENT_SECRET
        self.timeout = timeout or settings.IDENTITY_PROVIDER_TIMEOUT
        self.retry = retry or RetryStrategy(
            max_attempts=settings.IDENTITY_PROVIDER_MAX_ATTEMPTS,
            base_delay=settings.IDENTITY_PROVIDER_RETRY_BASE_DELAY,
        )
        self.session = session or requests.Session()
        self.token_cache = token_cache or get_token_cache(
            self.base_url, self.realm, self.client_id,
            settings.TOKEN_EXPIRY_MARGIN_SECONDS,
        )

    @property
    def token_url(self):
        return f"{self.base_url}/realms/{self.realm}/protocol/openid-connect/token"

    @property
    def admin_url(self):
        return f"{self.base_url}/admin/realms/{self.realm}"

    # ----------------------------------------------------------------- token

    def _fetch_token(self) -> Tuple[str, int]:
        try:
            response = self.session.post(
                self.token_url,
                data={
                    'grant_type': 'client_credentials',
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(
                f"Failed to reach identity provider token endpoint: {str(e)}",
                exc_info=True
            )
            raise IdentityProviderAuthError(f"Failed to authenticate with identity provider: {str(e)}") from e

        if response.status_code != 200:
            logger.error(
                "Identity provider refused client credentials",
                extra={'status_code': response.status_code}
            )
            raise IdentityProviderAuthError(
                "Identity provider refused client credentials",
                provider_status=response.status_code,
                provider_body=response.text,
            )

        try:
            data = response.json()
            token = data['access_token']
        except (ValueError, KeyError, TypeError) as e:
            raise IdentityProviderAuthError(
                "Identity provider token response has no access_token",
                provider_status=response.status_code,
                provider_body=response.text,
            ) from e

        expires_in = int(data.get('expires_in') or DEFAULT_TOKEN_LIFETIME)
        logger.info("Identity provider access token acquired", extra={'expires_in': expires_in})
        return token, expires_in

    def get_access_token(self) -> str:
        return self.token_cache.get(self._fetch_token)

    # --------------------------------------------------------------- request

    @staticmethod
    def _check_cancelled(cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("Identity provider call cancelled")

    def _request(self, method: str, path: str, json=None, params=None, cancel_event=None) -> requests.Response:
        url = f"{self.admin_url}/{path}"
        idempotent = method in IDEMPOTENT_METHODS
        token_refreshed = False
        attempt = 0

        while True:
            self._check_cancelled(cancel_event)
            add_breadcrumb('identity_provider', f"{method} {path}", data={'attempt': attempt})

            try:
                token = self.get_access_token()
                response = self.session.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers={'Authorization': f'Bearer {token}'},
                    timeout=self.timeout,
                )
            except IdentityProviderAuthError as e:
                if self.retry.should_retry(attempt, e):
                    self.retry.wait(attempt, cancel_event)
                    attempt += 1
                    continue
                raise
            except requests.exceptions.RequestException as e:
                # A connection error means the request never reached the provider.
                never_sent = isinstance(e, requests.exceptions.ConnectionError)
                error = IdentityProviderRequestError(f"{method} {path} failed: {str(e)}")
                logger.warning(
                    f"Identity provider call failed: {method} {path}",
                    extra={'attempt': attempt, 'error': str(e)}
                )
                if (idempotent or never_sent) and self.retry.should_retry(attempt, error):
                    self.retry.wait(attempt, cancel_event)
                    attempt += 1
                    continue
                raise error from e

            if response.status_code == 401 and not token_refreshed:
                self.token_cache.invalidate(token)
                token_refreshed = True
                continue

            if response.status_code >= 400:
                error = IdentityProviderRequestError(
                    f"Identity provider rejected {method} {path}",
                    provider_status=response.status_code,
                    provider_body=response.text,
                )
                logger.warning(
                    f"Identity provider rejected {method} {path}",
                    extra={'status_code': response.status_code, 'attempt': attempt}
                )
                if idempotent and self.retry.should_retry(attempt, error):
                    self.retry.wait(attempt, cancel_event)
                    attempt += 1
                    continue
                raise error

            return response

    @staticmethod
    def _json(response: requests.Response):
        try:
            return response.json()
        except ValueError as e:
            raise IdentityProviderRequestError(
                "Identity provider returned malformed JSON",
                provider_status=response.status_code,
                provider_body=response.text,
            ) from e

    @staticmethod
    def _id_from_location(response: requests.Response) -> Optional[str]:
        location = response.headers.get('Location')
        if not location:
            return None
        return location.rstrip('/').rsplit('/', 1)[-1] or None

    def _delete(self, path, cancel_event=None) -> bool:
        """DELETE that treats 404 as already deleted. Returns False on 404."""
        try:
            self._request('DELETE', path, cancel_event=cancel_event)
        except IdentityProviderRequestError as e:
            if e.provider_status == 404:
                logger.info(f"Identity provider resource already gone: {path}")
                return False
            raise
        return True

    # ---------------------------------------------------------- organizations

    def create_org(self, name: str, domain: str, cancel_event=None) -> str:
        """
        Create an organization with one domain.

        Returns:
            str: the new organization id
        """
        response = self._request(
            'POST',
            'organizations',
            json={'name': name, 'enabled': True, 'domains': [{'name': domain}]},
            cancel_event=cancel_event,
        )

        org_id = self._id_from_location(response)
        if not org_id:
            org = self.find_org_by_domain(domain, cancel_event=cancel_event)
            if not org:
                raise IdentityProviderRequestError(
                    "Organization was created but its id could not be determined",
                    provider_status=response.status_code,
                    provider_body=response.text,
                )
            org_id = org['id']

        logger.info("Identity provider organization created", extra={'org_id': org_id, 'domain': domain})
        return org_id

    def find_org_by_domain(self, domain: str, cancel_event=None) -> Optional[dict]:
        response = self._request(
            'GET',
            'organizations',
            params={'search': domain},
            cancel_event=cancel_event,
        )
        wanted = domain.lower()
        for org in self._json(response) or []:
            domains = [str(d.get('name', '')).lower() for d in org.get('domains') or []]
            if wanted in domains:
                return org
        return None

    def delete_org(self, org_id: str, cancel_event=None) -> bool:
        return self._delete(f"organizations/{org_id}", cancel_event=cancel_event)

    def add_membership(self, org_id: str, user_id: str, cancel_event=None):
        # The members endpoint takes the bare user id as a JSON string body.
        self._request(
            'POST',
            f"organizations/{org_id}/members",
            json=user_id,
            cancel_event=cancel_event,
        )
        logger.info("Identity provider membership linked", extra={'org_id': org_id, 'user_id': user_id})

    def remove_membership(self, org_id: str, user_id: str, cancel_event=None) -> bool:
        return self._delete(f"organizations/{org_id}/members/{user_id}", cancel_event=cancel_event)

    # ------------------------------------------------------------------ users

    def create_user(self, username: str, email: str, first_name: str, last_name: str,
                    password: Optional[str] = None, cancel_event=None) -> str:
        """
        Create an enabled user with a verified email.

        Without a password the user must set one on first login.

        Returns:
            str: the new user id
        """
        payload = {
            'username': username,
            'email': email,
            'firstName': first_name,
            'lastName': last_name,
            'enabled': True,
            'emailVerified': True,
            'requiredActions': [],
        }
        if password:
            payload['credentials'] = [{'type': 'password', 'value': password, 'temporary': False}]
        else:
            payload['requiredActions'] = ['UPDATE_PASSWORD']

        response = self._request('POST', 'users', json=payload, cancel_event=cancel_event)

        user_id = self._id_from_location(response)
        if not user_id:
            user = self.find_user_by_email(email, cancel_event=cancel_event)
            if not user:
                raise IdentityProviderRequestError(
                    "User was created but its id could not be determined",
                    provider_status=response.status_code,
                    provider_body=response.text,
                )
            user_id = user['id']

        logger.info("Identity provider user created", extra={'user_id': user_id})
        return user_id

    def find_user_by_email(self, email: str, cancel_event=None) -> Optional[dict]:
        response = self._request(
            'GET',
            'users',
            params={'email': email, 'exact': 'true'},
            cancel_event=cancel_event,
        )
        wanted = email.lower()
        for user in self._json(response) or []:
            if str(user.get('email', '')).lower() == wanted:
                return user
        return None

    def delete_user(self, user_id: str, cancel_event=None) -> bool:
        return self._delete(f"users/{user_id}", cancel_event=cancel_event)

