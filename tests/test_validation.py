"""Tests for structural validation of generated files."""

from apiforge.core.enums import Framework
from apiforge.validators.project_validator import first_error, validate_project


class TestValidateProject:
    """Errors block a generation; warnings never do."""

    def test_clean_fastapi_project(self) -> None:
        files = {"main.py": "from fastapi import FastAPI\napp = FastAPI()\n", "requirements.txt": "fastapi\n"}
        assert validate_project(files, Framework.FASTAPI) == []

    def test_python_syntax_error_has_location(self) -> None:
        issues = validate_project({"main.py": "x = 1\ndef f(:\n"}, Framework.FASTAPI)
        err = first_error(issues)
        assert err.file == "main.py"
        assert err.line == 2
        assert err.message.startswith("SyntaxError")

    def test_invalid_json(self) -> None:
        files = {"index.js": "module.exports = {};\n", "package.json": '{"name": "x",\n}'}
        err = first_error(validate_project(files, Framework.EXPRESS))
        assert err.file == "package.json"
        assert err.line == 2

    def test_unbalanced_js_is_a_warning(self) -> None:
        files = {"index.js": "app.get('/', (req, res) => {\n", "package.json": "{}"}
        issues = validate_project(files, Framework.EXPRESS)
        assert first_error(issues) is None
        assert issues[0].severity == "warning"
        assert issues[0].file == "index.js"

    def test_missing_entrypoint_and_manifest_warn(self) -> None:
        issues = validate_project({"utils.py": "x = 1\n"}, Framework.FLASK)
        assert first_error(issues) is None
        assert len(issues) == 2

    def test_incremental_skips_completeness_checks(self) -> None:
        assert validate_project({"utils.py": "x = 1\n"}, Framework.FLASK, require_complete=False) == []

    def test_no_files_is_an_error(self) -> None:
        assert first_error(validate_project({}, Framework.FASTAPI)).message == "Generation produced no files"
