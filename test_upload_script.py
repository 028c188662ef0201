import subprocess
import sys
from pathlib import Path

SCRIPT = Path(__file__).resolve().parent / "scripts" / "upload_workbook.py"


def run_script(*args):
    return subprocess.run([sys.executable, str(SCRIPT), *args], capture_output=True, text=True)


def test_workbook_path_is_required():
    result = run_script("--save")
    assert result.returncode == 2
    assert "workbook" in result.stderr


def test_flags_are_not_read_as_the_path(tmp_path):
    missing = tmp_path / "registry.xlsx"
    result = run_script("--save", str(missing), "--override")
    assert result.returncode == 1
    assert f"Workbook not found: {missing}" in result.stderr
