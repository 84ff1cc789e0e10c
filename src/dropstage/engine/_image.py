"""Staging image: renders the Dockerfile and asks the engine to build it.

The image bundles the platform's root filesystem with the buildpack
lifecycle binaries, compiled from pinned versions.  Building is idempotent:
the engine's layer cache turns an unchanged Dockerfile into a no-op, so it
runs before every stage and download.
"""

from __future__ import annotations

import contextlib

import jinja2

from dropstage.config import StagerConfig
from dropstage.engine._archive import tar_file
from dropstage.engine._client import EngineClient
from dropstage.errors import ImageBuildError, TemplateError
from dropstage.logger import logger

DOCKERFILE_TEMPLATE = """\
FROM cloudfoundry/cflinuxfs2:{{ stack_version }}

ENV GO_VERSION={{ go_version }} DIEGO_VERSION={{ diego_version }}

RUN curl -L "https://storage.googleapis.com/golang/go$GO_VERSION.linux-amd64.tar.gz" | \\
    tar -C /usr/local -xz

RUN mkdir -p /tmp/lifecycle /go/src/code.cloudfoundry.org && \\
    cd /go/src/code.cloudfoundry.org && \\
    git clone --single-branch https://github.com/cloudfoundry/diego-release && \\
    cd diego-release && \\
    git checkout "v$DIEGO_VERSION" && \\
    git submodule update --init --recursive \\
      src/code.cloudfoundry.org/archiver \\
      src/code.cloudfoundry.org/buildpackapplifecycle \\
      src/code.cloudfoundry.org/bytefmt \\
      src/code.cloudfoundry.org/cacheddownloader \\
      src/github.com/cloudfoundry-incubator/candiedyaml \\
      src/github.com/cloudfoundry/systemcerts && \\
    export PATH=/usr/local/go/bin:$PATH GOPATH=/go/src/code.cloudfoundry.org/diego-release && \\
    go build -o /tmp/lifecycle/launcher code.cloudfoundry.org/buildpackapplifecycle/launcher && \\
    go build -o /tmp/lifecycle/builder code.cloudfoundry.org/buildpackapplifecycle/builder && \\
    rm -rf /go /usr/local/go

RUN mkdir -p /tmp/app /tmp/cache /tmp/buildpacks /tmp/local && \\
    chown -R vcap:vcap /tmp/app /tmp/cache /tmp/buildpacks /tmp/local

USER vcap
"""


_jinja = jinja2.Environment(undefined=jinja2.StrictUndefined, keep_trailing_newline=True)


def render_dockerfile(config: StagerConfig, template: str = DOCKERFILE_TEMPLATE) -> str:
    """Substitute the pinned versions into *template*.

    Any name the template uses beyond the three versions is an error, as is
    broken template syntax; both surface as ``TemplateError``.
    """
    try:
        return _jinja.from_string(template).render(
            diego_version=config.diego_version,
            go_version=config.go_version,
            stack_version=config.stack_version,
        )
    except jinja2.UndefinedError as exc:
        raise TemplateError(f"Dockerfile template references unknown field: {exc}") from exc
    except jinja2.TemplateError as exc:
        raise TemplateError(f"malformed Dockerfile template: {exc}") from exc


class ImageBuilder:
    def __init__(
        self,
        engine: EngineClient,
        config: StagerConfig,
        *,
        template: str = DOCKERFILE_TEMPLATE,
    ) -> None:
        self.engine = engine
        self.config = config
        self.template = template

    async def ensure_image(self) -> None:
        """Build (or confirm) the staging image; raise on the first build error."""
        dockerfile = render_dockerfile(self.config, self.template)
        context = tar_file("Dockerfile", dockerfile.encode())
        logger.debug(
            "Building staging image",
            image=self.config.image,
            pull=self.config.update_rootfs,
        )
        messages = self.engine.build_image(
            context, tag=self.config.image, pull=self.config.update_rootfs
        )
        async with contextlib.aclosing(messages):
            async for message in messages:
                error = message.get("error") or (message.get("errorDetail") or {}).get("message")
                if error:
                    raise ImageBuildError(str(error).strip())
        logger.debug("Staging image ready", image=self.config.image)
