from infra_over_http.config.settings import settings, Settings

__all__ = ["settings", "Settings"]
