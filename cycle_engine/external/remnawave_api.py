import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime

import aiohttp


logger = logging.getLogger(__name__)


@dataclass
class PanelUserTraffic:
    uuid: str
    used_traffic_bytes: int
    traffic_limit_bytes: int
    expire_at: datetime | None = None
    last_traffic_reset_at: datetime | None = None


class RemnaWaveAPIError(Exception):
    def __init__(self, message: str, status_code: int = None, response_data: dict = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(self.message)


class RemnaWaveAPI:
    """Minimal panel client: the engine only resets user traffic."""

    def __init__(self, base_url: str, api_key: str, secret_key: str | None = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.secret_key = secret_key
        self.session: aiohttp.ClientSession | None = None

    def _prepare_auth_headers(self) -> dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'X-Api-Key': self.api_key,
            'Authorization': f'Bearer {self.api_key}',
        }

    def _prepare_cookies(self) -> dict[str, str] | None:
        if not self.secret_key:
            return None
        if ':' in self.secret_key:
            key_name, key_value = self.secret_key.split(':', 1)
            return {key_name: key_value}
        return {self.secret_key: self.secret_key}

    async def __aenter__(self):
        session_kwargs = {
            'timeout': aiohttp.ClientTimeout(total=60, connect=10),
            'headers': self._prepare_auth_headers(),
        }
        cookies = self._prepare_cookies()
        if cookies:
            session_kwargs['cookies'] = cookies

        self.session = aiohttp.ClientSession(**session_kwargs)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()

    async def _make_request(self, method: str, endpoint: str, data: dict | None = None) -> dict:
        if not self.session:
            raise RemnaWaveAPIError('Session not initialized. Use async context manager.')

        url = f'{self.base_url}{endpoint}'
        max_retries = 3
        base_delay = 1.0

        for attempt in range(max_retries + 1):
            try:
                kwargs = {'url': url}
                if data:
                    kwargs['json'] = data

                async with self.session.request(method, **kwargs) as response:
                    response_text = await response.text()

                    try:
                        response_data = json.loads(response_text) if response_text else {}
                    except json.JSONDecodeError:
                        response_data = {'raw_response': response_text}

                    if response.status == 429 and attempt < max_retries:
                        retry_after = float(response.headers.get('Retry-After', base_delay * (2**attempt)))
                        logger.warning(
                            'Rate limited (429) on %s %s, retry %d/%d after %.1fs',
                            method,
                            endpoint,
                            attempt + 1,
                            max_retries,
                            retry_after,
                        )
                        await asyncio.sleep(retry_after)
                        continue

                    if response.status >= 400:
                        error_message = response_data.get('message', f'HTTP {response.status}')
                        logger.error('Panel API error %s on %s %s: %s', response.status, method, endpoint, error_message)
                        raise RemnaWaveAPIError(error_message, response.status, response_data)

                    return response_data

            except aiohttp.ClientError as e:
                if attempt < max_retries:
                    delay = base_delay * (2**attempt)
                    logger.warning(
                        'Request failed on %s %s: %s, retry %d/%d after %.1fs',
                        method,
                        endpoint,
                        e,
                        attempt + 1,
                        max_retries,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise RemnaWaveAPIError(f'Request failed: {e!s}')

        raise RemnaWaveAPIError(f'Max retries exceeded for {method} {endpoint}')

    async def reset_user_traffic(self, uuid: str) -> PanelUserTraffic:
        response = await self._make_request('POST', f'/api/users/{uuid}/actions/reset-traffic')
        return self._parse_user_traffic(response['response'])

    def _parse_user_traffic(self, user_data: dict) -> PanelUserTraffic:
        traffic = user_data.get('userTraffic') or {}
        return PanelUserTraffic(
            uuid=user_data['uuid'],
            used_traffic_bytes=int(traffic.get('usedTrafficBytes', user_data.get('usedTrafficBytes', 0)) or 0),
            traffic_limit_bytes=int(user_data.get('trafficLimitBytes', 0) or 0),
            expire_at=self._parse_optional_datetime(user_data.get('expireAt')),
            last_traffic_reset_at=self._parse_optional_datetime(user_data.get('lastTrafficResetAt')),
        )

    def _parse_optional_datetime(self, date_str: str | None) -> datetime | None:
        if not date_str:
            return None
        return datetime.fromisoformat(date_str.replace('Z', '+00:00'))
