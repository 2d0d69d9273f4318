#!/usr/bin/env python3
"""Build the prototype renderer template."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from parent directory
load_dotenv(Path(__file__).parent.parent / ".env")

from e2b import Template, default_build_logger
from template import template


TEMPLATE_ALIAS = os.getenv("E2B_TEMPLATE", "sciproto-renderer")


if __name__ == "__main__":
    print("=" * 60)
    print(f"  Building E2B template: {TEMPLATE_ALIAS}")
    print("=" * 60)
    print()
    print("This will take a few minutes on first build.")
    print("The template includes:")
    print("  - Node.js 20")
    print("  - esbuild")
    print("  - react, react-dom")
    print("  - recharts, framer-motion, lucide-react, clsx")
    print()

    Template.build(
        template,
        alias=TEMPLATE_ALIAS,
        on_build_logs=default_build_logger(),
    )

    print()
    print("=" * 60)
    print(f"  Template '{TEMPLATE_ALIAS}' built successfully!")
    print("=" * 60)
    print()
    print("Use with:")
    print("   SANDBOX_MODE=e2b")
    print(f"   E2B_TEMPLATE={TEMPLATE_ALIAS}")
    print()
