"""Vite + React + Tailwind starter written into every new sandbox workspace.

The file set is static: nothing here depends on request input.
"""

from __future__ import annotations

import json
from typing import Any

PACKAGE_JSON: dict[str, Any] = {
    "name": "sandbox-app",
    "version": "1.0.0",
    "type": "module",
    "scripts": {
        "dev": "vite --host",
        "build": "vite build",
        "preview": "vite preview",
    },
    "dependencies": {
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
    },
    "devDependencies": {
        "@vitejs/plugin-react": "^4.0.0",
        "vite": "^4.3.9",
        "tailwindcss": "^3.3.0",
        "postcss": "^8.4.31",
        "autoprefixer": "^10.4.16",
    },
}


def render_package_json() -> str:
    return json.dumps(PACKAGE_JSON, indent=2)


def render_vite_config(port: int = 5173) -> str:
    return f"""import {{ defineConfig }} from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({{
  plugins: [react()],
  server: {{
    host: '0.0.0.0',
    port: {int(port)},
    strictPort: true,
    hmr: false
  }}
}})"""


TAILWIND_CONFIG = """/** @type {import('tailwindcss').Config} */
export default {
  content: [
    "./index.html",
    "./src/**/*.{js,ts,jsx,tsx}",
  ],
  theme: {
    extend: {},
  },
  plugins: [],
}"""

POSTCSS_CONFIG = """export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}"""

INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Sandbox App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.jsx"></script>
  </body>
</html>"""

MAIN_JSX = """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.jsx'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)"""

APP_JSX = """function App() {
  return (
    <div className="min-h-screen bg-gray-900 text-white flex items-center justify-center p-4">
      <div className="text-center max-w-2xl">
        <p className="text-lg text-gray-400">
          Sandbox Ready<br/>
          Start building your React app with Vite and Tailwind CSS!
        </p>
      </div>
    </div>
  )
}

export default App"""

INDEX_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

@layer base {
  :root {
    font-synthesis: none;
    text-rendering: optimizeLegibility;
    -webkit-font-smoothing: antialiased;
    -moz-osx-font-smoothing: grayscale;
    -webkit-text-size-adjust: 100%;
  }

  * {
    margin: 0;
    padding: 0;
    box-sizing: border-box;
  }
}

body {
  font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, sans-serif;
  background-color: rgb(17 24 39);
}"""

MANIFEST_PATH = "package.json"


def scaffold_files(*, port: int = 5173) -> list[tuple[str, str]]:
    """Return the scaffold as ordered (relative path, content) pairs.

    The manifest comes first; it must be written before anything else.
    """
    return [
        (MANIFEST_PATH, render_package_json()),
        ("vite.config.js", render_vite_config(port)),
        ("tailwind.config.js", TAILWIND_CONFIG),
        ("postcss.config.js", POSTCSS_CONFIG),
        ("index.html", INDEX_HTML),
        ("src/main.jsx", MAIN_JSX),
        ("src/App.jsx", APP_JSX),
        ("src/index.css", INDEX_CSS),
    ]


INITIAL_FILES: tuple[str, ...] = tuple(path for path, _ in scaffold_files())
