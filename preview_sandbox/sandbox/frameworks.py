"""
Framework Catalogue - How to build and serve each supported framework.

This module handles:
- Normalizing framework tags and detecting frameworks from generated files
- Container images, internal ports, install/run commands per framework
- Dockerfile generation for the local container runtime
- Scaffolding critical files the generator left out (package.json, next.config.js)

Supported Frameworks:
- Node.js: Next.js, React, Vue, Vite, Express
- Python: FastAPI, Flask, Streamlit
"""

import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


# =============================================================================
# PROFILES
# =============================================================================

@dataclass(frozen=True)
class FrameworkProfile:
    """Build and serve recipe for one framework."""
    name: str
    language: str  # "node" or "python"
    base_image: str
    internal_port: int
    install_command: Optional[str]
    run_command: List[str]
    ready_markers: Tuple[str, ...] = ()
    environment: Dict[str, str] = field(default_factory=dict)
    codesandbox_template: str = "node"
    stackblitz_template: str = "node"

    @property
    def is_node(self) -> bool:
        return self.language == "node"


NODE_IMAGE = "node:18-alpine"
PYTHON_IMAGE = "python:3.11-slim"

# File watching inside containers needs polling
_NODE_DEV_ENV = {
    "NODE_ENV": "development",
    "BROWSER": "none",
    "CI": "true",
    "CHOKIDAR_USEPOLLING": "true",
    "WATCHPACK_POLLING": "true",
}

PROFILES: Dict[str, FrameworkProfile] = {
    "nextjs": FrameworkProfile(
        name="nextjs",
        language="node",
        base_image=NODE_IMAGE,
        internal_port=3000,
        install_command="npm install",
        run_command=["npm", "run", "dev"],
        ready_markers=("Ready in", "ready started server"),
        environment={**_NODE_DEV_ENV, "PORT": "3000", "NEXT_TELEMETRY_DISABLED": "1"},
        codesandbox_template="next",
        stackblitz_template="node",
    ),
    "react": FrameworkProfile(
        name="react",
        language="node",
        base_image=NODE_IMAGE,
        internal_port=3000,
        install_command="npm install",
        run_command=["npm", "start"],
        ready_markers=("Compiled successfully", "webpack compiled"),
        environment={**_NODE_DEV_ENV, "PORT": "3000", "HOST": "0.0.0.0"},
        codesandbox_template="create-react-app",
        stackblitz_template="create-react-app",
    ),
    "vue": FrameworkProfile(
        name="vue",
        language="node",
        base_image=NODE_IMAGE,
        internal_port=3000,
        install_command="npm install",
        run_command=["npm", "run", "dev", "--", "--host", "0.0.0.0", "--port", "3000"],
        ready_markers=("Local:",),
        environment={**_NODE_DEV_ENV, "PORT": "3000"},
        codesandbox_template="vue-cli",
        stackblitz_template="node",
    ),
    "vite": FrameworkProfile(
        name="vite",
        language="node",
        base_image=NODE_IMAGE,
        internal_port=3000,
        install_command="npm install",
        run_command=["npm", "run", "dev", "--", "--host", "0.0.0.0", "--port", "3000"],
        ready_markers=("Local:",),
        environment={**_NODE_DEV_ENV, "PORT": "3000"},
        codesandbox_template="node",
        stackblitz_template="node",
    ),
    "express": FrameworkProfile(
        name="express",
        language="node",
        base_image=NODE_IMAGE,
        internal_port=3000,
        install_command="npm install",
        run_command=["npm", "start"],
        ready_markers=("listening",),
        environment={"NODE_ENV": "development", "PORT": "3000", "HOST": "0.0.0.0"},
        codesandbox_template="node",
        stackblitz_template="node",
    ),
    "fastapi": FrameworkProfile(
        name="fastapi",
        language="python",
        base_image=PYTHON_IMAGE,
        internal_port=8000,
        install_command="pip install --no-cache-dir -r requirements.txt",
        run_command=["uvicorn", "main:app", "--host", "0.0.0.0", "--port", "8000"],
        ready_markers=("Application startup complete",),
        codesandbox_template="node",
        stackblitz_template="node",
    ),
    "flask": FrameworkProfile(
        name="flask",
        language="python",
        base_image=PYTHON_IMAGE,
        internal_port=5000,
        install_command="pip install --no-cache-dir -r requirements.txt",
        run_command=["flask", "--app", "app", "run", "--host", "0.0.0.0", "--port", "5000"],
        ready_markers=("Running on",),
        codesandbox_template="node",
        stackblitz_template="node",
    ),
    "streamlit": FrameworkProfile(
        name="streamlit",
        language="python",
        base_image=PYTHON_IMAGE,
        internal_port=8501,
        install_command="pip install --no-cache-dir -r requirements.txt",
        run_command=[
            "streamlit", "run", "app.py",
            "--server.address", "0.0.0.0",
            "--server.port", "8501",
            "--server.headless", "true",
        ],
        ready_markers=("You can now view",),
        codesandbox_template="node",
        stackblitz_template="node",
    ),
}

FRAMEWORK_ALIASES = {
    "next": "nextjs",
    "next.js": "nextjs",
    "nextjs": "nextjs",
    "react": "react",
    "create-react-app": "react",
    "vue": "vue",
    "vanilla": "vite",
    "vite": "vite",
    "express": "express",
    "node": "express",
    "fastapi": "fastapi",
    "flask": "flask",
    "streamlit": "streamlit",
}

# Frameworks whose package manifests get missing dependencies merged in
PACKAGE_TEMPLATES: Dict[str, Dict] = {
    "nextjs": {
        "name": "sandbox-nextjs",
        "version": "0.1.0",
        "private": True,
        "scripts": {
            "dev": "next dev --hostname 0.0.0.0 --port 3000",
            "build": "next build",
            "start": "next start",
        },
        "dependencies": {
            "next": "^14.0.0",
            "react": "^18.2.0",
            "react-dom": "^18.2.0",
        },
        "devDependencies": {
            "typescript": "^5.0.0",
            "@types/node": "^20.0.0",
            "@types/react": "^18.2.0",
            "@types/react-dom": "^18.2.0",
            "tailwindcss": "^3.3.0",
            "postcss": "^8.4.0",
            "autoprefixer": "^10.4.0",
        },
    },
    "react": {
        "name": "sandbox-react",
        "version": "0.1.0",
        "private": True,
        "scripts": {"start": "react-scripts start", "build": "react-scripts build"},
        "dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0", "react-scripts": "5.0.1"},
    },
    "vue": {
        "name": "sandbox-vue",
        "version": "0.1.0",
        "private": True,
        "scripts": {"dev": "vite", "build": "vite build", "preview": "vite preview"},
        "dependencies": {"vue": "^3.3.0"},
        "devDependencies": {"@vitejs/plugin-vue": "^4.0.0", "vite": "^4.4.0"},
    },
    "vite": {
        "name": "sandbox-vanilla",
        "version": "0.1.0",
        "private": True,
        "scripts": {"dev": "vite", "build": "vite build", "preview": "vite preview"},
        "devDependencies": {"vite": "^4.4.0"},
    },
    "express": {
        "name": "sandbox-express",
        "version": "0.1.0",
        "private": True,
        "scripts": {"start": "node index.js"},
        "dependencies": {"express": "^4.18.0"},
    },
}

NEXT_CONFIG = """/** @type {import('next').NextConfig} */
const nextConfig = {
  output: 'standalone',
}

module.exports = nextConfig
"""

DOCKERIGNORE = """node_modules
.next
.git
.env.local
.env.production
npm-debug.log*
__pycache__
*.pyc
.DS_Store
"""

PYTHON_REQUIREMENTS = {
    "fastapi": "fastapi\nuvicorn\n",
    "flask": "flask\n",
    "streamlit": "streamlit\n",
}


# =============================================================================
# LOOKUP AND DETECTION
# =============================================================================

def normalize_framework(framework: Optional[str]) -> Optional[str]:
    """Map a framework tag to its canonical name, or None if unknown."""
    if not framework:
        return None
    return FRAMEWORK_ALIASES.get(framework.strip().lower())


def get_profile(framework: Optional[str]) -> FrameworkProfile:
    """Get the recipe for a framework. Unknown tags build as a generic Vite app."""
    name = normalize_framework(framework)
    return PROFILES[name] if name else PROFILES["vite"]


def detect_framework(files: Dict[str, str]) -> Optional[str]:
    """
    Detect the web framework used by a generated file set.

    Returns:
        Canonical framework name or None if not a recognizable web app
    """
    # Check package.json for Node.js frameworks
    if "package.json" in files:
        try:
            pkg = json.loads(files["package.json"])
            deps = {**pkg.get("dependencies", {}), **pkg.get("devDependencies", {})}
            if "next" in deps:
                return "nextjs"
            if "react-scripts" in deps:
                return "react"
            if "vue" in deps:
                return "vue"
            if "vite" in deps:
                return "vite"
            if "express" in deps:
                return "express"
            if "react" in deps:
                return "react"
        except (json.JSONDecodeError, AttributeError):
            pass

    # Check requirements.txt for Python frameworks
    if "requirements.txt" in files:
        req_content = files["requirements.txt"].lower()
        for framework in ("fastapi", "flask", "streamlit"):
            if framework in req_content:
                return framework

    # Next.js app router layout without a manifest
    if any(path.startswith(("src/app/", "app/")) and path.endswith(("page.tsx", "page.jsx")) for path in files):
        return "nextjs"

    return None


def is_ready_output(profile: FrameworkProfile, log_lines: List[str]) -> bool:
    """Check whether a dev server printed its ready marker."""
    if not profile.ready_markers:
        return False
    text = "\n".join(log_lines)
    return any(marker in text for marker in profile.ready_markers)


# =============================================================================
# BUILD CONTEXT
# =============================================================================

def merge_package_json(content: Optional[str], framework: str) -> str:
    """
    Ensure a package.json carries the dependencies and scripts the framework needs.

    Values already present in the generated manifest win over the template.
    Unparseable manifests are replaced by the template.
    """
    template = PACKAGE_TEMPLATES.get(framework)
    if template is None:
        return content or "{}"
    if not content:
        return json.dumps(template, indent=2)

    try:
        package = json.loads(content)
        if not isinstance(package, dict):
            raise ValueError("package.json must be an object")
    except ValueError:
        return json.dumps(template, indent=2)

    for key in ("dependencies", "devDependencies", "scripts"):
        if key in template:
            package[key] = {**template[key], **package.get(key, {})}
    package.setdefault("name", template["name"])
    package.setdefault("private", True)
    return json.dumps(package, indent=2)


def scaffold_files(files: Dict[str, str], framework: Optional[str]) -> Dict[str, str]:
    """
    Return the file set with missing critical files added.

    Args:
        files: Generated path->content mapping
        framework: Framework tag

    Returns:
        New mapping; the input is not modified
    """
    profile = get_profile(framework)
    result = dict(files)

    if profile.is_node:
        result["package.json"] = merge_package_json(result.get("package.json"), profile.name)
        if profile.name == "nextjs" and not any(
            name in result for name in ("next.config.js", "next.config.mjs", "next.config.ts")
        ):
            result["next.config.js"] = NEXT_CONFIG
    else:
        requirements = PYTHON_REQUIREMENTS.get(profile.name, "")
        if "requirements.txt" not in result:
            result["requirements.txt"] = requirements

    result.setdefault(".dockerignore", DOCKERIGNORE)
    return result


def render_dockerfile(profile: FrameworkProfile) -> str:
    """Build the Dockerfile for a framework profile."""
    lines = [
        f"FROM {profile.base_image}",
        "",
        "WORKDIR /app",
        "",
    ]

    # Install dependencies first (for better caching)
    if profile.is_node:
        lines.append("COPY package*.json ./")
    else:
        lines.append("COPY requirements.txt ./")
    if profile.install_command:
        lines.append(f"RUN {profile.install_command}")
    lines.extend(["", "COPY . .", ""])

    for key, value in sorted(profile.environment.items()):
        lines.append(f"ENV {key}={value}")
    if profile.environment:
        lines.append("")

    lines.append(f"EXPOSE {profile.internal_port}")
    lines.append("")
    lines.append(f"CMD {json.dumps(profile.run_command)}")
    return "\n".join(lines) + "\n"
