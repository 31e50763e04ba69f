"""
Installer scripts — ``bin/install.sh`` and ``bin/verify.sh``.

The assembler hands a ``ScriptContext`` to a renderer and stores
whatever it returns with mode 0755.  ``DefaultScriptRenderer`` is used
when no other renderer is configured.

``verify.sh`` recomputes the contents checksum exactly the way the
assembler does: sha256 of the ``sha256sum`` listing of every payload
file (compose/, images/, resources/, env/), byte-sorted by path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

INSTALL_SCRIPT = "install.sh"
VERIFY_SCRIPT = "verify.sh"

# Top-level archive directories covered by the contents checksum
PAYLOAD_DIRS = ("compose", "env", "images", "resources")


@dataclass
class ScriptContext:
    """What a renderer may use."""

    build_id: str
    build_name: str
    namespaces: list[str] = field(default_factory=list)
    required_env: list[str] = field(default_factory=list)
    contents_checksum: str = ""
    compose_file: str = "compose/docker-compose.yaml"
    env_example: str = "env/.env.example"


class ScriptRenderer(Protocol):
    def render(self, context: ScriptContext) -> dict[str, str]:
        """Return {"install.sh": text, "verify.sh": text}."""
        ...


_VERIFY_TEMPLATE = """#!/bin/sh
# Verify installer contents for build {build_id}
set -eu

ROOT="$(cd "$(dirname "$0")/.." && pwd)"
cd "$ROOT"

EXPECTED="{checksum}"
ACTUAL="$(find {payload_dirs} -type f -print0 | LC_ALL=C sort -z | xargs -0 sha256sum | sha256sum | cut -d' ' -f1)"

if [ "$ACTUAL" != "$EXPECTED" ]; then
    echo "verify: contents checksum mismatch" >&2
    echo "  expected $EXPECTED" >&2
    echo "  actual   $ACTUAL" >&2
    exit 1
fi
echo "verify: contents OK"
"""

_INSTALL_TEMPLATE = """#!/bin/sh
# Offline installer for {build_name} (build {build_id})
# Namespaces: {namespaces}
set -eu

ROOT="$(cd "$(dirname "$0")/.." && pwd)"
cd "$ROOT"

"$ROOT/bin/{verify}"

if [ ! -f .env ]; then
    cp {env_example} .env
    echo "install: created .env from {env_example}"
fi

MISSING=""
for var in {required_env}; do
    if ! grep -Eq "^${{var}}=.+" .env; then
        MISSING="$MISSING $var"
    fi
done
if [ -n "$MISSING" ]; then
    echo "install: set these variables in $ROOT/.env:$MISSING" >&2
    exit 1
fi

for image in images/*.tar; do
    [ -e "$image" ] || continue
    echo "install: loading $image"
    docker load -i "$image"
done

docker compose -f {compose_file} --env-file .env up -d
echo "install: done"
"""


class DefaultScriptRenderer:
    """Plain POSIX-sh scripts driving ``docker load`` and ``docker compose``."""

    def render(self, context: ScriptContext) -> dict[str, str]:
        return {
            VERIFY_SCRIPT: _VERIFY_TEMPLATE.format(
                build_id=context.build_id,
                checksum=context.contents_checksum,
                payload_dirs=" ".join(PAYLOAD_DIRS),
            ),
            INSTALL_SCRIPT: _INSTALL_TEMPLATE.format(
                build_id=context.build_id,
                build_name=context.build_name or context.build_id,
                namespaces=", ".join(context.namespaces) or "(none)",
                verify=VERIFY_SCRIPT,
                env_example=context.env_example,
                required_env=" ".join(context.required_env),
                compose_file=context.compose_file,
            ),
        }
