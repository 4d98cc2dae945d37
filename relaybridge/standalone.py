"""
独立运行入口，开发联调时无需完整宿主环境。

用法：
  RELAY_SHARED_SECRET=sec_test \
  RELAY_COMPLETION_BASE_URL=http://localhost:3001 \
  RELAY_COMPLETION_API_KEY=pxy_test \
  RELAY_APP_SERVER_URL=http://localhost:3000 \
  python -m relaybridge.standalone

旧变量名 VM_INTERNAL_SECRET / LLM_PROXY_URL / LLM_PROXY_API_KEY / APP_SERVER_URL / PORT 同样生效。
"""

from __future__ import annotations

import sys

import uvicorn

from relaybridge.config.settings import Settings, settings
from relaybridge.core.app import create_app
from relaybridge.core.errors import ConfigurationError
from relaybridge.util.logger import logger

_REQUIRED = (
    ("shared_secret", "RELAY_SHARED_SECRET"),
    ("completion_api_key", "RELAY_COMPLETION_API_KEY"),
)


def check_required_settings(config: Settings) -> None:
    missing = [env_name for field_name, env_name in _REQUIRED if not getattr(config, field_name)]
    if missing:
        raise ConfigurationError(f"missing required environment variables: {', '.join(missing)}")


def main() -> int:
    try:
        check_required_settings(settings)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1

    app = create_app(settings)
    logger.info(
        "standalone relay listening on http://%s:%s (POST %s, GET /health) completion=%s app_server=%s",
        settings.host,
        settings.port,
        settings.webhook_path,
        settings.completion_base_url,
        settings.app_server_url,
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
