"""Named dependency bundles that can be installed into a workspace in one call."""

from __future__ import annotations

from dataclasses import dataclass, field

TAILWIND_CONFIG = """/** @type {import('tailwindcss').Config} */
export default {
  content: ["./index.html", "./src/**/*.{js,ts,jsx,tsx,mdx}", "./app/**/*.{js,ts,jsx,tsx,mdx}"],
  theme: {
    extend: {},
  },
  plugins: [],
};
"""

POSTCSS_CONFIG = """export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
};
"""

VITEST_CONFIG = """import { defineConfig } from "vitest/config";

export default defineConfig({
  test: {
    environment: "jsdom",
    globals: true,
  },
});
"""


@dataclass(frozen=True)
class Preset:
    name: str
    description: str
    dependencies: tuple[str, ...] = ()
    dev_dependencies: tuple[str, ...] = ()
    config_files: dict[str, str] = field(default_factory=dict)


PRESETS: dict[str, Preset] = {
    "tailwind": Preset(
        name="tailwind",
        description="Tailwind CSS with PostCSS and Autoprefixer",
        dev_dependencies=("tailwindcss@3", "postcss", "autoprefixer"),
        config_files={
            "tailwind.config.js": TAILWIND_CONFIG,
            "postcss.config.js": POSTCSS_CONFIG,
        },
    ),
    "animation": Preset(
        name="animation",
        description="Framer Motion animations",
        dependencies=("framer-motion",),
    ),
    "forms": Preset(
        name="forms",
        description="React Hook Form with Zod validation",
        dependencies=("react-hook-form", "zod", "@hookform/resolvers"),
    ),
    "icons": Preset(
        name="icons",
        description="Lucide icon set",
        dependencies=("lucide-react",),
    ),
    "testing": Preset(
        name="testing",
        description="Vitest with Testing Library and jsdom",
        dev_dependencies=("vitest", "@testing-library/react", "jsdom"),
        config_files={"vitest.config.ts": VITEST_CONFIG},
    ),
}


def get_preset(name: str) -> Preset | None:
    return PRESETS.get((name or "").strip().lower())
