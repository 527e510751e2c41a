# FILE: apiforge/validators/project_validator.py
"""
Structural checks over a finished file set.

Error-level findings fail the generation; warnings are reported on the
job but never block a version.
"""

import ast
import json
from dataclasses import dataclass
from typing import Dict, List, Optional

from apiforge.core.enums import Framework

ENTRYPOINTS = {
    Framework.FASTAPI: ("main.py", "app/main.py", "app.py", "src/main.py"),
    Framework.FLASK: ("app.py", "main.py", "wsgi.py", "app/__init__.py"),
    Framework.EXPRESS: ("index.js", "server.js", "app.js", "src/index.js", "src/server.js"),
    Framework.NEXTJS: ("package.json",),
    Framework.REACT: ("package.json",),
    Framework.VUE: ("package.json",),
    Framework.ANGULAR: ("package.json",),
}

MANIFESTS = {
    Framework.FASTAPI: ("requirements.txt", "pyproject.toml"),
    Framework.FLASK: ("requirements.txt", "pyproject.toml"),
    Framework.EXPRESS: ("package.json",),
}

JS_SUFFIXES = (".js", ".mjs", ".cjs", ".ts")


@dataclass
class ValidationIssue:
    file: Optional[str]
    line: Optional[int]
    message: str
    severity: str = "error"  # error | warning

    def to_dict(self) -> Dict:
        return {"file": self.file, "line": self.line, "message": self.message, "severity": self.severity}


def _check_python(path: str, content: str) -> List[ValidationIssue]:
    try:
        ast.parse(content, filename=path)
    except SyntaxError as e:
        return [ValidationIssue(path, e.lineno, f"SyntaxError: {e.msg}")]
    return []


def _check_json(path: str, content: str) -> List[ValidationIssue]:
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        return [ValidationIssue(path, e.lineno, f"Invalid JSON: {e.msg}")]
    return []


def _check_brackets(path: str, content: str) -> List[ValidationIssue]:
    # cheap balance check; strings and comments are not parsed, so warning only
    pairs = {")": "(", "]": "[", "}": "{"}
    stack = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        for ch in line:
            if ch in "([{":
                stack.append((ch, lineno))
            elif ch in pairs:
                if not stack or stack[-1][0] != pairs[ch]:
                    return [ValidationIssue(path, lineno, f"Unbalanced '{ch}'", severity="warning")]
                stack.pop()
    if stack:
        ch, lineno = stack[-1]
        return [ValidationIssue(path, lineno, f"Unclosed '{ch}'", severity="warning")]
    return []


def validate_project(
    files: Dict[str, str],
    framework: Framework,
    require_complete: bool = True,
) -> List[ValidationIssue]:
    """
    require_complete=False for incremental changes, where only the touched
    files are present and entrypoint/manifest checks do not apply.
    """
    issues: List[ValidationIssue] = []

    if not files:
        return [ValidationIssue(None, None, "Generation produced no files")]

    for path, content in sorted(files.items()):
        if path.endswith(".py"):
            issues.extend(_check_python(path, content))
        elif path.endswith(".json"):
            issues.extend(_check_json(path, content))
        elif path.endswith(JS_SUFFIXES):
            issues.extend(_check_brackets(path, content))

    if require_complete:
        if not any(p in files for p in ENTRYPOINTS[framework]):
            issues.append(ValidationIssue(
                None, None,
                f"No entrypoint found (expected one of {', '.join(ENTRYPOINTS[framework])})",
                severity="warning",
            ))
        manifests = MANIFESTS.get(framework)
        if manifests and not any(p in files for p in manifests):
            issues.append(ValidationIssue(None, None, "Missing dependency manifest", severity="warning"))

    return issues


def first_error(issues: List[ValidationIssue]) -> Optional[ValidationIssue]:
    return next((i for i in issues if i.severity == "error"), None)
