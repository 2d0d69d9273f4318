"""
E2B Renderer Template - sandbox for checking generated prototype modules.

Pre-installs Node.js 20, esbuild and the libraries prototypes may import
(React, Recharts, Framer Motion, Lucide, clsx), so a render check is an
esbuild compile followed by a server render in node, with no network
access needed.
"""

from e2b import Template

APP_DIR = "/home/user/app"

REACT_VERSION = "18"

# Pre-installed npm packages
RENDERER_PACKAGES = [
    # Toolchain
    "esbuild@^0.23",

    # Core
    f"react@^{REACT_VERSION}",
    f"react-dom@^{REACT_VERSION}",

    # Visualization & animation
    "recharts@^2.12",
    "framer-motion@^11.2",
    "lucide-react@^0.378",
    "clsx@^2.1",
]

PACKAGE_JSON = """{
  "name": "sciproto-renderer",
  "version": "0.1.0",
  "private": true,
  "type": "module"
}"""

NODE_ENV = 'export PATH="/home/user/.local/share/fnm:$PATH" && eval "$(fnm env)"'

template = (
    Template()
    .from_image("e2bdev/base")
    # Install fnm (Fast Node Manager) - no root required
    .run_cmd("curl -fsSL https://fnm.vercel.app/install | bash")
    .run_cmd(f"{NODE_ENV} && fnm install 20 && fnm default 20")
    .run_cmd(f"mkdir -p {APP_DIR}/renders")
    .run_cmd(f"cat > {APP_DIR}/package.json << 'EOFMARKER'\n{PACKAGE_JSON}\nEOFMARKER")
    .run_cmd(f"{NODE_ENV} && cd {APP_DIR} && npm install " + " ".join(RENDERER_PACKAGES))
    # Make node/npx available to non-login shells
    .set_envs({"PATH": "/home/user/.local/share/fnm/aliases/default/bin:/home/user/.local/share/fnm:$PATH"})
)
