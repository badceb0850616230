"""Repository hygiene indicators computed from a snapshot's file tree.

Every detector is an independent function of the tree (and, for branch count,
the snapshot's branch list). The only cross-dependency is
``detect_ai_without_config``, which is gated on a non-zero attribution ratio.

Trees are untrusted and can be arbitrarily large, so anything that walks
directories goes through ``walk_source_files``: depth, entry count and file size are
all capped, and symlinks are never followed.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from pathlib import Path
from typing import Iterator, Sequence

from app.models.scan import IndicatorSet
from app.services.snapshot_service import RepoSnapshot

log = logging.getLogger(__name__)

MAX_WALK_DEPTH = 10
MAX_WALK_ENTRIES = 5000
MAX_FILE_BYTES = 1_048_576
TODO_SCAN_LIMIT = 100
TODO_FLOOD_THRESHOLD = 20
GITIGNORE_MIN_LINES = 3
FEW_TESTS_THRESHOLD = 3

LINT_CONFIGS = (
    ".eslintrc",
    ".eslintrc.js",
    ".eslintrc.cjs",
    ".eslintrc.json",
    ".eslintrc.yml",
    "eslint.config.js",
    "eslint.config.mjs",
    "eslint.config.ts",
    ".prettierrc",
    ".prettierrc.js",
    ".prettierrc.json",
    ".prettierrc.yml",
    "prettier.config.js",
    "prettier.config.mjs",
    "biome.json",
    "biome.jsonc",
    "deno.json",
    "deno.jsonc",
    ".oxlintrc.json",
    "rustfmt.toml",
    ".rustfmt.toml",
    ".rubocop.yml",
    "pylintrc",
    ".pylintrc",
    ".flake8",
    "ruff.toml",
    ".ruff.toml",
    ".golangci.yml",
    ".golangci.yaml",
)

CI_CONFIGS = (
    ".github/workflows",
    ".gitlab-ci.yml",
    "Jenkinsfile",
    ".circleci",
    ".travis.yml",
    "azure-pipelines.yml",
    "bitbucket-pipelines.yml",
    ".buildkite",
)

AI_CONFIGS = (
    ".claude",
    "CLAUDE.md",
    ".cursorrules",
    "cursor.json",
    ".cursor",
    "AGENTS.md",
    ".aider.conf.yml",
    ".aiderignore",
    "copilot-instructions.md",
    ".github/copilot-instructions.md",
)

README_NAMES = ("README.md", "readme.md", "README", "README.rst", "README.txt")

ENV_FILES = (
    ".env",
    ".env.local",
    ".env.development",
    ".env.production",
    ".env.staging",
    ".env.test",
    ".env.dev",
    ".env.prod",
)

SECRET_PATTERNS = (
    "sk-",
    "sk_live_",
    "sk_test_",
    "AKIA",
    "ghp_",
    "gho_",
    "glpat-",
    "xoxb-",
    "xoxp-",
    "Bearer eyJ",
)

SECRET_CANDIDATE_FILES = (
    "src/config.ts",
    "src/config.js",
    "config.ts",
    "config.js",
    "src/constants.ts",
    "src/constants.js",
    "docker-compose.yml",
    "docker-compose.yaml",
    ".github/workflows/ci.yml",
)

TEST_DIRS = ("tests", "test", "__tests__", "spec", "src/test")
TEST_CONFIGS = (
    "jest.config.js",
    "jest.config.ts",
    "vitest.config.ts",
    "vitest.config.js",
    "pytest.ini",
    ".mocharc.yml",
)

SKIP_DIRS = frozenset(
    {
        "node_modules",
        "target",
        ".git",
        "dist",
        "build",
        ".next",
        "vendor",
        "__pycache__",
        ".venv",
        "venv",
    }
)

SOURCE_EXTENSIONS = frozenset(
    {
        ".rs", ".ts", ".js", ".py", ".go", ".rb", ".java", ".tsx", ".jsx", ".vue",
        ".svelte", ".php", ".swift", ".kt", ".c", ".cpp", ".cs", ".h",
    }
)

LANGUAGE_BY_EXTENSION = {
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".mjs": "JavaScript",
    ".cjs": "JavaScript",
    ".rs": "Rust",
    ".py": "Python",
    ".go": "Go",
    ".rb": "Ruby",
    ".java": "Java",
    ".css": "CSS",
    ".scss": "CSS",
    ".sass": "CSS",
    ".html": "HTML",
    ".htm": "HTML",
    ".svelte": "Svelte",
    ".vue": "Vue",
    ".php": "PHP",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".cc": "C++",
    ".hpp": "C++",
    ".cs": "C#",
}


def _is_regular_file(path: Path) -> bool:
    try:
        return path.is_file() and not path.is_symlink()
    except OSError:
        return False


def _is_regular_dir(path: Path) -> bool:
    try:
        return path.is_dir() and not path.is_symlink()
    except OSError:
        return False


def _exists(path: Path) -> bool:
    return _is_regular_file(path) or _is_regular_dir(path)


def _read_text(path: Path) -> str | None:
    if not _is_regular_file(path):
        return None
    try:
        if path.stat().st_size > MAX_FILE_BYTES:
            return None
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def walk_source_files(
    root: Path,
    *,
    extensions: frozenset[str] | None = None,
    max_depth: int = MAX_WALK_DEPTH,
    max_entries: int = MAX_WALK_ENTRIES,
) -> Iterator[Path]:
    """Yield regular files under ``root`` within the walk caps.

    Iterative depth-first walk over ``os.scandir``; symlinks are skipped and the
    total number of directory entries visited is capped so a single call
    terminates in bounded time on any tree.
    """
    stack: list[tuple[Path, int]] = [(root, 0)]
    visited = 0
    while stack and visited < max_entries:
        current, depth = stack.pop()
        # Entries are read lazily so one huge directory cannot exceed the cap.
        children: list[os.DirEntry] = []
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    children.append(entry)
                    visited += 1
                    if visited >= max_entries:
                        break
        except OSError:
            continue
        children.sort(key=lambda e: e.name)
        subdirs: list[Path] = []
        for entry in children:
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if depth < max_depth and entry.name not in SKIP_DIRS:
                        subdirs.append(Path(entry.path))
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                if extensions is not None and Path(entry.name).suffix.lower() not in extensions:
                    continue
                if entry.stat(follow_symlinks=False).st_size > MAX_FILE_BYTES:
                    continue
            except OSError:
                continue
            yield Path(entry.path)
        stack.extend((d, depth + 1) for d in reversed(subdirs))


def detect_no_linting(root: Path) -> bool:
    if any(_exists(root / name) for name in LINT_CONFIGS):
        return False
    pyproject = _read_text(root / "pyproject.toml")
    if pyproject:
        try:
            tools = tomllib.loads(pyproject).get("tool", {})
        except tomllib.TOMLDecodeError:
            tools = {}
        if isinstance(tools, dict) and any(k in tools for k in ("ruff", "black", "flake8", "pylint")):
            return False
    return True


def detect_no_ci_cd(root: Path) -> bool:
    return not any(_exists(root / name) for name in CI_CONFIGS)


def detect_ai_without_config(root: Path, attribution_ratio: float) -> bool:
    if attribution_ratio <= 0:
        return False
    return not any(_exists(root / name) for name in AI_CONFIGS)


def detect_dependency_tree_committed(root: Path) -> bool:
    """An installed dependency tree sits in the snapshot and is not gitignored."""
    gitignore = _read_text(root / ".gitignore") or ""
    markers = (("node_modules", "package.json"), ("vendor", "modules.txt"))
    return any(
        _is_regular_file(root / directory / marker) and not _ignored_by(gitignore, directory)
        for directory, marker in markers
    )


def detect_no_gitignore(root: Path) -> bool:
    content = _read_text(root / ".gitignore")
    if content is None:
        return True
    lines = [line for line in content.splitlines() if line.strip() and not line.startswith("#")]
    return len(lines) < GITIGNORE_MIN_LINES


def detect_no_readme(root: Path) -> bool:
    return not any(_is_regular_file(root / name) for name in README_NAMES)


def count_todo_markers(root: Path, *, limit: int = TODO_SCAN_LIMIT) -> int:
    """Count TODO/FIXME/HACK lines in source files; stops once past ``limit``."""
    count = 0
    for path in walk_source_files(root, extensions=SOURCE_EXTENSIONS):
        content = _read_text(path)
        if content is None:
            continue
        for line in content.splitlines():
            upper = line.upper()
            if "TODO" in upper or "FIXME" in upper or "HACK" in upper:
                count += 1
        if count > limit:
            break
    return count


def count_branches(branches: Sequence[str]) -> int:
    names = set()
    for ref in branches:
        name = (ref or "").strip()
        if not name or name.endswith("/HEAD") or name == "HEAD":
            continue
        if name.startswith("origin/"):
            name = name[len("origin/"):]
        names.add(name)
    return len(names)


def detect_tests(root: Path) -> tuple[bool, int]:
    """Return (has_tests, test_files_count)."""
    has_tests = False
    files = 0
    for name in TEST_DIRS:
        test_dir = root / name
        if _is_regular_dir(test_dir):
            has_tests = True
            files += sum(1 for _ in walk_source_files(test_dir, max_depth=5, max_entries=1000))
    if any(_is_regular_file(root / name) for name in TEST_CONFIGS):
        has_tests = True
    pyproject = _read_text(root / "pyproject.toml")
    if pyproject and "[tool.pytest" in pyproject:
        has_tests = True
    return has_tests, files


def _ignored_by(gitignore: str, filename: str) -> bool:
    for raw in gitignore.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", "!")):
            continue
        if line.startswith("**/"):
            line = line[3:]
        line = line.rstrip("/")
        if line == filename or line == f"/{filename}":
            return True
        if line.endswith("*") and filename.startswith(line[:-1].lstrip("/")):
            return True
    return False


def count_env_files(root: Path) -> int:
    """Count ``.env*`` files present in the tree and not covered by .gitignore."""
    gitignore = _read_text(root / ".gitignore") or ""
    return sum(
        1
        for name in ENV_FILES
        if _is_regular_file(root / name) and not _ignored_by(gitignore, name)
    )


def count_secret_hints(root: Path) -> int:
    count = 0
    for candidate in SECRET_CANDIDATE_FILES:
        content = _read_text(root / candidate)
        if content is None:
            continue
        count += sum(content.count(pattern) for pattern in SECRET_PATTERNS)
    return count


def count_dependencies(root: Path) -> int:
    """Declared dependency count from the first manifest found."""
    package_json = _read_text(root / "package.json")
    if package_json is not None:
        try:
            parsed = json.loads(package_json)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            total = 0
            for key in ("dependencies", "devDependencies"):
                section = parsed.get(key)
                if isinstance(section, dict):
                    total += len(section)
            return total

    cargo = _read_text(root / "Cargo.toml")
    if cargo is not None:
        try:
            parsed_toml = tomllib.loads(cargo)
        except tomllib.TOMLDecodeError:
            parsed_toml = None
        if isinstance(parsed_toml, dict):
            return sum(
                len(parsed_toml.get(key) or {})
                for key in ("dependencies", "dev-dependencies")
                if isinstance(parsed_toml.get(key), dict)
            )

    requirements = _read_text(root / "requirements.txt")
    if requirements is not None:
        return sum(
            1
            for line in requirements.splitlines()
            if line.strip() and not line.strip().startswith(("#", "-"))
        )
    return 0


def _line_count(content: str) -> int:
    return content.count("\n") + (0 if content.endswith("\n") else 1)


def count_lines_by_language(root: Path) -> tuple[int, dict[str, int]]:
    """Return (source line total, lines per language) from one bounded walk.

    The total covers ``SOURCE_EXTENSIONS`` only; the language map also counts
    markup and stylesheets.
    """
    total = 0
    languages: dict[str, int] = {}
    extensions = SOURCE_EXTENSIONS | frozenset(LANGUAGE_BY_EXTENSION)
    for path in walk_source_files(root, extensions=extensions):
        content = _read_text(path)
        if not content:
            continue
        lines = _line_count(content)
        suffix = path.suffix.lower()
        if suffix in SOURCE_EXTENSIONS:
            total += lines
        language = LANGUAGE_BY_EXTENSION.get(suffix)
        if language is not None:
            languages[language] = languages.get(language, 0) + lines
    return total, languages


def count_source_lines(root: Path) -> int:
    return count_lines_by_language(root)[0]


def detect_indicators(snapshot: RepoSnapshot, attribution_ratio: float) -> IndicatorSet:
    root = Path(snapshot.root)
    todo_count = count_todo_markers(root)
    source_lines, languages = count_lines_by_language(root)
    branch_count = count_branches(snapshot.branches)
    has_tests, test_files = detect_tests(root)
    indicators = IndicatorSet(
        filesystem_checked=True,
        no_linting=detect_no_linting(root),
        no_ci_cd=detect_no_ci_cd(root),
        ai_without_config=detect_ai_without_config(root, attribution_ratio),
        dependency_tree_committed=detect_dependency_tree_committed(root),
        no_gitignore=detect_no_gitignore(root),
        no_readme=detect_no_readme(root),
        todo_count=todo_count,
        todo_flood=todo_count > TODO_FLOOD_THRESHOLD,
        branch_count=branch_count,
        single_branch=branch_count <= 1,
        mega_commit=None,
        has_tests=has_tests,
        test_files_count=test_files,
        env_files_count=count_env_files(root),
        secret_hint_count=count_secret_hints(root),
        dependency_count=count_dependencies(root),
        source_line_count=source_lines,
        languages=languages,
    )
    log.debug("indicators for %s: %s", root, indicators.badges())
    return indicators
