"""OAuth client configuration."""

from pydantic import BaseModel, ConfigDict

from modelkit.services.backend_request import Method


def _join(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


class OAuthConfiguration(BaseModel):
    """OAuth client settings and the URLs derived from them."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str
    base_url: str
    login_path: str
    register_path: str | None = None
    token_path: str
    redirect_url: str
    method: Method = Method.POST

    @property
    def login_url(self) -> str:
        return _join(self.base_url, self.login_path)

    @property
    def register_url(self) -> str | None:
        if self.register_path is None:
            return None
        return _join(self.base_url, self.register_path)

    @property
    def token_url(self) -> str:
        return _join(self.base_url, self.token_path)
