"""Environment emulation: the runtime contract of the hosted platform.

The build pipeline inspects ``VCAP_APPLICATION``, ``VCAP_SERVICES`` and a
handful of ``CF_*`` variables to decide how to build.  Reproducing them
locally makes a locally staged droplet match one staged by the platform.
"""

from __future__ import annotations

import json
from collections.abc import Mapping

from dropstage.types import ApplicationDescriptor, Services

STACK = "cflinuxfs2"


def baseline_env(app: ApplicationDescriptor) -> dict[str, str]:
    """Platform-contract variables that don't depend on the app's own config."""
    return {
        "CF_INSTANCE_ADDR": "",
        "CF_INSTANCE_IP": "0.0.0.0",
        "CF_INSTANCE_PORT": "",
        "CF_INSTANCE_PORTS": "[]",
        "CF_STACK": STACK,
        "HOME": "/home/vcap",
        "LANG": "en_US.UTF-8",
        "MEMORY_LIMIT": f"{app.mem}m",
        "PATH": "/usr/local/bin:/usr/bin:/bin",
        "USER": "vcap",
    }


def vcap_services(services: Services | None) -> str:
    """Serialize bindings; an empty or missing set is ``{}``, never ``null``."""
    payload = {
        label: [binding.model_dump(exclude_none=True) for binding in bindings]
        for label, bindings in (services or {}).items()
    }
    return json.dumps(payload)


def merge_env(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge layers left to right; later layers win on collision."""
    merged: dict[str, str] = {}
    for layer in layers:
        if layer:
            merged.update(layer)
    return merged


def build_environment(
    app: ApplicationDescriptor,
    services: Services | None,
    *overrides: Mapping[str, str] | None,
) -> dict[str, str]:
    """Baseline + VCAP variables, then each override layer in order.

    Callers pass staging overrides before user overrides so the user wins.
    """
    env = baseline_env(app)
    env["VCAP_APPLICATION"] = json.dumps(app.to_vcap())
    env["VCAP_SERVICES"] = vcap_services(services)
    return merge_env(env, *overrides)


def env_list(env: Mapping[str, str]) -> list[str]:
    """Flatten to ``KEY=value`` entries, sorted for stable container configs."""
    return [f"{key}={value}" for key, value in sorted(env.items())]
