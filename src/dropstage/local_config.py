"""Per-application defaults from ``local.yml``.

Example::

    applications:
    - name: myapp
      buildpack: ./buildpacks/go_buildpack.zip
      env:
        GOVERSION: go1.8
      services:
        p-mysql:
        - name: db
          label: p-mysql
          plan: small
          credentials: {uri: "mysql://localhost/db"}
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from dropstage.errors import ConfigError
from dropstage.types import AppConfig, LocalYML, Services


class LocalConfigLoader:
    def __init__(self, path: str | Path = "local.yml") -> None:
        self.path = Path(path)

    def load(self) -> LocalYML:
        """Parse the file; a missing file means no app declares anything."""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return LocalYML()
        except OSError as exc:
            raise ConfigError(f"cannot read {self.path}: {exc}") from exc
        try:
            raw = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {self.path}: {exc}") from exc
        try:
            return LocalYML.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(f"invalid {self.path}: {exc}") from exc


def get_app_config(name: str, local_yml: LocalYML) -> AppConfig:
    """The declared config for *name*, or an empty one."""
    for app in local_yml.applications:
        if app.name == name:
            return app.model_copy(deep=True)
    return AppConfig(name=name)


class LocalServiceResolver:
    """Serves another ``local.yml`` app's services for ``-s``/``-f``.

    Stands in for a remote platform: binding ``myapp`` to the services of
    ``db-app`` only needs ``db-app`` declared next to it.
    """

    def __init__(self, loader: LocalConfigLoader) -> None:
        self.loader = loader

    async def services(self, app_name: str) -> Services:
        for app in self.loader.load().applications:
            if app.name == app_name:
                return app.model_copy(deep=True).services or {}
        raise ConfigError(
            f"cannot fetch services of '{app_name}': not declared in {self.loader.path}"
        )
