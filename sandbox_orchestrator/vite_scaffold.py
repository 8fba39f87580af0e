from __future__ import annotations

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable

PACKAGE_JSON = {
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

TAILWIND_CONFIG_JS = """/** @type {import('tailwindcss').Config} */
export default {
  content: [
    "./index.html",
    "./src/**/*.{js,ts,jsx,tsx}",
  ],
  theme: {
    extend: {},
  },
  plugins: [],
}
"""

POSTCSS_CONFIG_JS = """export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}
"""

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
</html>
"""

MAIN_JSX = """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.jsx'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)
"""

APP_JSX = """function App() {
  return (
    <div className="min-h-screen bg-gradient-to-br from-blue-50 to-indigo-100 text-gray-900 flex items-center justify-center p-4">
      <div className="text-center max-w-2xl">
        <h1 className="text-3xl font-bold text-gray-900 mb-2">Sandbox Ready</h1>
        <p className="text-lg text-gray-600 mb-4">
          Your application will appear here once it has been generated.
        </p>
        <div className="flex items-center justify-center space-x-2">
          <div className="w-2 h-2 bg-indigo-500 rounded-full animate-pulse"></div>
          <div className="w-2 h-2 bg-indigo-500 rounded-full animate-pulse" style={{animationDelay: '0.2s'}}></div>
          <div className="w-2 h-2 bg-indigo-500 rounded-full animate-pulse" style={{animationDelay: '0.4s'}}></div>
        </div>
        <p className="text-sm text-gray-500 mt-6">Powered by Vite + React + Tailwind CSS</p>
      </div>
    </div>
  )
}

export default App
"""

INDEX_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

body {
  font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, sans-serif;
  background-color: rgb(17 24 39);
}
"""


def allowed_hosts_for(preview_base_domain: str | None) -> list[str]:
    hosts: list[str] = []
    domain = (preview_base_domain or "").strip().lstrip(".")
    if domain:
        hosts.append(f".{domain}")
    hosts.append("localhost")
    return hosts


def render_vite_config(*, port: int, allowed_hosts: Iterable[str]) -> str:
    hosts = ",\n".join(f"      {json.dumps(h)}" for h in allowed_hosts)
    return f"""import {{ defineConfig }} from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({{
  plugins: [react()],
  server: {{
    host: '0.0.0.0',
    port: {int(port)},
    strictPort: true,
    allowedHosts: [
{hosts}
    ],
    hmr: {{
      clientPort: 443,
      protocol: 'wss'
    }}
  }}
}})
"""


def scaffold_files(*, port: int, allowed_hosts: Iterable[str]) -> dict[str, str]:
    """Minimal Vite + React + Tailwind project, keyed by root-relative path."""
    return {
        "package.json": json.dumps(PACKAGE_JSON, indent=2) + "\n",
        "vite.config.js": render_vite_config(port=port, allowed_hosts=allowed_hosts),
        "tailwind.config.js": TAILWIND_CONFIG_JS,
        "postcss.config.js": POSTCSS_CONFIG_JS,
        "index.html": INDEX_HTML,
        "src/main.jsx": MAIN_JSX,
        "src/App.jsx": APP_JSX,
        "src/index.css": INDEX_CSS,
    }
