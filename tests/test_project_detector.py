from src.codecanvas.domain.artifact_models import CodeBlock
from src.codecanvas.services.project_detector import detect_projects, group_files, is_dev_dependency

INDEX = (
    "import React from 'react';\n"
    "import { createRoot } from 'react-dom/client';\n"
    "import App from './App';\n"
    "import '../styles/main.css';\n"
    "createRoot(document.getElementById('root')).render(<App />);"
)
APP = "import React from 'react';\nimport Button from './Button';\nexport default function App() { return <Button />; }"
BUTTON = "export default function Button() { return <button>Click</button>; }"
CSS = "button { color: white; background: navy; }"
VITE = "import { defineConfig } from 'vite';\nimport react from '@vitejs/plugin-react';\nexport default defineConfig({ plugins: [react()] });"
SEED = "import requests\n\ndef seed():\n    return requests.get('http://localhost').status_code"


def _blocks():
    return [
        CodeBlock("jsx", INDEX, "src/index.jsx"),
        CodeBlock("jsx", APP, "src/App.jsx"),
        CodeBlock("jsx", BUTTON, "src/Button.jsx"),
        CodeBlock("css", CSS, "styles/main.css"),
        CodeBlock("javascript", VITE, "vite.config.js"),
        CodeBlock("python", SEED, "scripts/seed.py"),
    ]


def test_related_files_form_one_project():
    (project,) = detect_projects(_blocks(), "# Todo App\nHere is the code.")
    names = [f.file_name for f in project.files]
    assert names == ["src/index.jsx", "src/App.jsx", "src/Button.jsx", "styles/main.css", "vite.config.js"]
    assert project.title == "Todo App"
    assert project.framework == "react"
    assert project.metadata.entry_point == "src/index.jsx"
    assert project.metadata.dependencies == ["react", "react-dom"]
    assert project.metadata.dev_dependencies == ["vite", "@vitejs/plugin-react"]
    assert project.metadata.total_files == 5
    assert project.metadata.buildable


def test_unrelated_language_stays_out():
    groups = group_files([b for b in _blocks() if b.is_file])
    assert [len(g) for g in groups] == [5, 1]
    assert groups[1][0].file_hint == "scripts/seed.py"


def test_single_file_or_unhinted_blocks_are_not_projects():
    assert detect_projects([CodeBlock("jsx", APP, "src/App.jsx")]) == []
    assert detect_projects([CodeBlock("jsx", APP), CodeBlock("jsx", BUTTON)]) == []


def test_project_identity_is_content_derived():
    first = detect_projects(_blocks())[0]
    second = detect_projects(_blocks())[0]
    assert first.id == second.id
    assert first.title == "React Application"


def test_dev_dependency_patterns():
    assert is_dev_dependency("@types/react")
    assert is_dev_dependency("eslint-plugin-react")
    assert not is_dev_dependency("axios")
