#!/usr/bin/env python3
# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
# Portable tar backups with an embedded token -> path manifest

import argparse, enum, errno, io, json, logging, os, re, shutil, sys, tarfile, time, uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import psutil
from tqdm import tqdm

from jobthread import JobWorker
from tarkeep_gzip import CompressionLevel, gzip_tar

log = logging.getLogger("tarkeep")

# ===============================
# Constants
# ===============================

MANIFEST_NAME = "fingerprint.txt"
MANIFEST_SECTION = "[Backup Info]"
MANIFEST_DELIM = ": "
MANIFEST_ENCODING = "utf-8"

DEFAULT_BUILD_MARKER = "DEFAULT_FINGERPRINT"
BUILD_MARKER = os.environ.get("TARKEEP_FINGERPRINT") or DEFAULT_BUILD_MARKER

PROGRESS_DONE = 101                 # terminal sentinel, distinct from 0..100
PARTIAL_SUFFIX = ".partial"
TAR_HEADER_BYTES = 512
MIN_COPY_BUFFER = 64 * 1024
MAX_COPY_BUFFER = 16 * 1024 * 1024
POLL_INTERVAL = 0.1

# ===============================
# Errors
# ===============================

class TarkeepError(Exception):
    """Base class for every failure the engine reports."""


class IoFailure(TarkeepError):
    def __init__(self, path: Any, cause: Any):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"{self.path}: {cause}")


class InvalidArchive(TarkeepError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SerializationFailure(TarkeepError):
    def __init__(self, cause: Any):
        self.cause = cause
        super().__init__(f"serialization failed: {cause}")


class CompressionFailure(TarkeepError):
    def __init__(self, status: int):
        self.status = status
        super().__init__(f"compression failed with status {status}")

# ===============================
# Progress channel
# ===============================

class Progress:
    """Percentage cell shared between a worker thread and whoever draws it.

    Values 0..100 while a job runs, PROGRESS_DONE once it has finished. Reads
    and writes are plain attribute access; the value is advisory only.
    """
    __slots__ = ['_pct']

    def __init__(self) -> None:
        self._pct = 0

    def set(self, pct: int) -> None:
        self._pct = pct

    def get(self) -> int:
        return self._pct

    def done(self) -> None:
        self.set(PROGRESS_DONE)

    @property
    def finished(self) -> bool:
        return self._pct >= PROGRESS_DONE

# ===============================
# Path codec
# ===============================

_WINDOWS_PATH = re.compile(r"^(?:[A-Za-z]:(?:[\\/]|$)|\\\\)")


def new_token() -> str:
    return str(uuid.uuid4())


def assign_tokens(inputs: Iterable[Path]) -> List[Tuple[str, Path]]:
    """One fresh token per top-level input, shared by everything beneath it."""
    pairs = []
    for p in inputs:
        token = new_token()
        log.debug("assigned %s to %s", token, p)
        pairs.append((token, p))
    return pairs


def decode_token(token: str, path_map: Dict[str, str]) -> str:
    try:
        return path_map[token]
    except KeyError:
        raise InvalidArchive(f"token {token} is not listed in {MANIFEST_NAME}") from None


def lone_file_entry_name(token: str, path: Path) -> str:
    suffix = Path(path).suffix
    return f"{token}{suffix}" if suffix else token


def split_entry_name(name: str) -> Tuple[str, str]:
    """Split an entry name into its root component and the remainder below it."""
    root, _, rest = name.partition("/")
    return root, rest.strip("/")


def token_of(root_component: str) -> str:
    return root_component.split(".", 1)[0]


def pure_original(original: str):
    # only a drive letter or UNC prefix marks a Windows path, '\\' is a legal POSIX filename char
    if _WINDOWS_PATH.match(original):
        return PureWindowsPath(original)
    return PurePosixPath(original)


def split_original(original: str) -> Tuple[str, str]:
    pp = pure_original(original)
    return str(pp.parent), pp.name or str(pp)


def canon(path: str) -> str:
    return path.replace("\\", "/")


def human_base(original: str) -> str:
    """The tree path of a top-level item, with Windows separators folded to '/'."""
    parent, item = split_original(original)
    if isinstance(pure_original(original), PureWindowsPath):
        parent = canon(parent)
    return f"{parent}/{item}"


def canon_selection(path: str) -> str:
    return canon(path) if _WINDOWS_PATH.match(path) else path

# ===============================
# Manifest
# ===============================

@dataclass
class Manifest:
    build_marker: str
    entries: List[Tuple[str, str]] = field(default_factory=list)

    def path_map(self) -> Dict[str, str]:
        return dict(self.entries)

    def render(self) -> str:
        lines = [self.build_marker, MANIFEST_SECTION]
        lines.extend(f"{token}{MANIFEST_DELIM}{path}" for token, path in self.entries)
        return "\n".join(lines) + "\n"

    def encode(self) -> bytes:
        return self.render().encode(MANIFEST_ENCODING, "surrogateescape")

    @classmethod
    def parse(cls, text: str) -> "Manifest":
        lines = text.splitlines()
        marker = lines[0].strip() if lines else ""
        entries = []
        for line in lines[1:]:
            # lines without the delimiter are section headers or future fields
            if MANIFEST_DELIM not in line:
                continue
            token, path = line.split(MANIFEST_DELIM, 1)
            entries.append((token.strip(), path.strip()))
        return cls(marker, entries)


def manifest_tarinfo(payload: bytes) -> tarfile.TarInfo:
    # no backing filesystem object, so every header field is set by hand
    info = tarfile.TarInfo(MANIFEST_NAME)
    info.type = tarfile.REGTYPE
    info.size = len(payload)
    info.mode = 0o644
    info.mtime = int(time.time())
    return info


def check_marker(text: str, build_marker: str) -> None:
    if build_marker not in text:
        raise InvalidArchive("Invalid backup fingerprint.")

# ===============================
# Source survey & space preflight
# ===============================

def _raise(err: OSError) -> None:
    raise err


def walk_input(root: Path) -> Iterator[Tuple[Path, str, bool]]:
    """Yield (path, posix relative path, is_dir) for a folder input, parents first.

    The root itself comes first with an empty relative path. Symlinks and
    special files are skipped.
    """
    yield root, "", True
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        base = Path(dirpath)
        kept = []
        for name in sorted(dirnames):
            p = base / name
            if p.is_symlink():
                log.debug("skipping symlinked directory %s", p)
                continue
            kept.append(name)
            yield p, p.relative_to(root).as_posix(), True
        dirnames[:] = kept
        for name in sorted(filenames):
            p = base / name
            if p.is_symlink() or not p.is_file():
                log.debug("skipping %s (not a regular file)", p)
                continue
            yield p, p.relative_to(root).as_posix(), False


def payload_entries(token: str, src: Path) -> Iterator[Tuple[Path, str, bool]]:
    """Archive entries (source, entry name, is_dir) for one top-level input."""
    if src.is_file():
        yield src, lone_file_entry_name(token, src), False
        return
    for path, rel, is_dir in walk_input(src):
        yield path, f"{token}/{rel}" if rel else token, is_dir


def survey(inputs: List[Path]) -> Tuple[int, int]:
    """Full walk before writing: (file count floored at 1, estimated archive bytes)."""
    files = 0
    needed = 2 * TAR_HEADER_BYTES
    try:
        for src in inputs:
            for path, _name, is_dir in payload_entries("", src):
                needed += TAR_HEADER_BYTES
                if is_dir:
                    continue
                files += 1
                size = path.stat().st_size
                needed += -(-size // TAR_HEADER_BYTES) * TAR_HEADER_BYTES
    except OSError as e:
        raise IoFailure(e.filename or src, e) from e
    return max(files, 1), needed


def ensure_space(destination_dir: Path, needed_bytes: int, reserve_percent: int = 0) -> None:
    try:
        du = shutil.disk_usage(destination_dir)
    except OSError as e:
        raise IoFailure(destination_dir, e) from e
    reserve_abs = du.total * reserve_percent // 100
    if du.free - needed_bytes < reserve_abs:
        raise IoFailure(destination_dir, OSError(
            errno.ENOSPC,
            f"need {needed_bytes} bytes plus {reserve_percent}% reserve, only {du.free} free"))


def copy_buffer_bytes() -> int:
    avail = psutil.virtual_memory().available
    return int(min(max(avail // 1024, MIN_COPY_BUFFER), MAX_COPY_BUFFER))

# ===============================
# Archive writer
# ===============================

def _append_entry(tar: tarfile.TarFile, path: Path, arcname: str, is_dir: bool) -> None:
    try:
        info = tar.gettarinfo(str(path), arcname=arcname)
        if is_dir:
            # zero-length entry, only there to keep empty folders
            tar.addfile(info)
        else:
            with open(path, "rb") as fh:
                tar.addfile(info, fh)
    except OSError as e:
        raise IoFailure(path, e) from e
    log.debug("added %s as %s", path, arcname)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def write_backup(inputs: Iterable[Any],
                 destination_dir: Any,
                 progress: Optional[Progress] = None,
                 build_marker: Optional[str] = None,
                 reserve_percent: int = 0,
                 archive_name: Optional[str] = None) -> Path:
    """Write every input into a new tar archive under destination_dir.

    The manifest is the first entry. The archive is assembled under a
    ``.partial`` name and only renamed into place once the container is
    complete, so an interrupted run never leaves a valid-looking archive.
    Returns the final archive path.
    """
    progress = progress if progress is not None else Progress()
    marker = build_marker or BUILD_MARKER
    # absolute, not resolved, so symlinked inputs keep the given path
    inputs = [Path(os.path.abspath(p)) for p in inputs]
    destination_dir = Path(destination_dir)

    for src in inputs:
        if not src.exists():
            raise IoFailure(src, FileNotFoundError(errno.ENOENT, "No such file or directory"))
    if not destination_dir.is_dir():
        raise IoFailure(destination_dir, NotADirectoryError(errno.ENOTDIR, "Not a directory"))

    tokens = assign_tokens(inputs)
    total_files, needed = survey(inputs)
    ensure_space(destination_dir, needed, reserve_percent)

    name = archive_name or f"backup_{time.strftime('%Y-%m-%d_%H-%M-%S')}.tar"
    archive = destination_dir / name
    partial = archive.with_name(archive.name + PARTIAL_SUFFIX)
    manifest = Manifest(marker, [(token, str(src)) for token, src in tokens])
    log.debug("writing %s (%d files)", archive, total_files)

    try:
        tar = tarfile.open(partial, "w", format=tarfile.GNU_FORMAT,
                           dereference=True, copybufsize=copy_buffer_bytes())
    except OSError as e:
        raise IoFailure(partial, e) from e

    own = os.path.abspath(partial)
    try:
        with tar:
            payload = manifest.encode()
            tar.addfile(manifest_tarinfo(payload), io.BytesIO(payload))
            done = 0
            for token, src in tokens:
                for path, arcname, is_dir in payload_entries(token, src):
                    if os.path.abspath(path) == own:
                        continue
                    _append_entry(tar, path, arcname, is_dir)
                    if not is_dir:
                        done += 1
                        progress.set(done * 100 // total_files)
        os.replace(partial, archive)
    except OSError as e:
        _discard(partial)
        raise IoFailure(e.filename or archive, e) from e
    except BaseException:
        _discard(partial)
        raise

    log.debug("archive finished: %s", archive)
    progress.done()
    return archive

# ===============================
# Archive reader
# ===============================

def _open_stream(archive: Path) -> tarfile.TarFile:
    # forward-only stream, transparently gunzips .tar.gz deliverables
    try:
        return tarfile.open(archive, mode="r|*")
    except OSError as e:
        raise IoFailure(archive, e) from e
    except (tarfile.TarError, EOFError) as e:
        raise InvalidArchive(f"{Path(archive).name} is not a readable archive: {e}") from e


def _members(tar: tarfile.TarFile, archive: Path) -> Iterator[tarfile.TarInfo]:
    it = iter(tar)
    while True:
        try:
            member = next(it)
        except StopIteration:
            return
        except (tarfile.TarError, EOFError) as e:
            raise InvalidArchive(f"{Path(archive).name} is damaged: {e}") from e
        except OSError as e:
            raise IoFailure(archive, e) from e
        yield member


def read_manifest(archive: Any, build_marker: Optional[str] = None) -> Manifest:
    """Pass 1: find, validate and parse the manifest. Stops at the manifest."""
    archive = Path(archive)
    marker = build_marker or BUILD_MARKER
    text = None
    with _open_stream(archive) as tar:
        for member in _members(tar, archive):
            if member.name != MANIFEST_NAME:
                continue
            fh = tar.extractfile(member)
            if fh is None:
                raise InvalidArchive(f"{MANIFEST_NAME} in {archive.name} is not a regular file")
            try:
                text = fh.read().decode(MANIFEST_ENCODING, "surrogateescape")
            except OSError as e:
                raise IoFailure(archive, e) from e
            break
    if text is None:
        raise InvalidArchive(f"{archive.name} has no {MANIFEST_NAME}")
    check_marker(text, marker)
    manifest = Manifest.parse(text)
    log.debug("manifest loaded, %d tokens", len(manifest.entries))
    return manifest


def list_entries(archive: Any) -> List[str]:
    """Pass 2: every entry name except the manifest. Directories end with '/'."""
    archive = Path(archive)
    names = []
    with _open_stream(archive) as tar:
        for member in _members(tar, archive):
            if member.name == MANIFEST_NAME:
                continue
            names.append(member.name + "/" if member.isdir() else member.name)
    return names


def read_archive(archive: Any, build_marker: Optional[str] = None) -> Tuple[List[str], Dict[str, str]]:
    manifest = read_manifest(archive, build_marker)
    return list_entries(archive), manifest.path_map()

# ===============================
# Tree reconstruction
# ===============================

@dataclass
class TreeNode:
    children: Dict[str, "TreeNode"] = field(default_factory=dict)
    is_file: bool = False
    checked: bool = False


def build_tree(entry_names: List[str], path_map: Dict[str, str]) -> TreeNode:
    """Rebuild a tree keyed by original human paths, grouped by parent directory.

    Items whose parent label and name coincide end up sharing one node.
    """
    root = TreeNode()
    for token, original in path_map.items():
        parent_label, item_name = split_original(original)
        parent_node = root.children.setdefault(parent_label, TreeNode())
        if item_name in parent_node.children:
            log.warning("%s collides with another backed-up item, merging them", original)
        item = parent_node.children.setdefault(item_name, TreeNode())

        prefix = f"{token}/"
        nested = [n for n in entry_names if n.startswith(prefix)]
        if not nested:
            item.is_file = True
            continue

        item.is_file = False
        folders = [item]
        for name in nested:
            rest = name[len(prefix):].rstrip("/")
            if not rest:
                continue
            cursor = item
            for part in rest.split("/"):
                cursor = cursor.children.setdefault(part, TreeNode())
            if name.endswith("/"):
                folders.append(cursor)
            else:
                cursor.is_file = True
        # an empty folder is a selectable leaf
        for node in folders:
            node.is_file = not node.children
    return root


def set_all_checked(node: TreeNode, checked: bool) -> None:
    node.checked = checked
    for child in node.children.values():
        set_all_checked(child, checked)


def sync_checked(node: TreeNode) -> bool:
    """Recompute folder state: checked iff any descendant leaf is checked."""
    if not node.children:
        return node.checked
    states = [sync_checked(child) for child in node.children.values()]
    node.checked = any(states)
    return node.checked


def collect_paths(root: TreeNode) -> List[str]:
    """The selection set: '/'-joined human paths of every checked file node."""
    out: List[str] = []

    def walk(node: TreeNode, trail: List[str]) -> None:
        for name, child in node.children.items():
            trail.append(name)
            if child.is_file and child.checked:
                out.append("/".join(trail))
            walk(child, trail)
            trail.pop()

    walk(root, [])
    log.debug("collected %d checked paths", len(out))
    return out


def render_tree(root: TreeNode, indent: str = "  ") -> List[str]:
    lines: List[str] = []

    def walk(node: TreeNode, depth: int) -> None:
        for name in sorted(node.children):
            child = node.children[name]
            label = name if child.is_file else name.rstrip("/\\") + "/"
            lines.append(f"{indent * depth}[{'x' if child.checked else ' '}] {label}")
            walk(child, depth + 1)

    walk(root, 0)
    return lines

# ===============================
# Selection resolver
# ===============================

@dataclass
class ExtractionSet:
    """Entry names to extract, plus whole subtrees below selected folders."""
    names: Set[str] = field(default_factory=set)
    subtrees: Set[str] = field(default_factory=set)

    def add(self, name: str) -> None:
        """Select an entry name; when it is a folder, everything below it comes along."""
        self.names.add(name)
        self.subtrees.add(name + "/")

    def __contains__(self, name: str) -> bool:
        if name in self.names:
            return True
        return any(name.startswith(prefix) for prefix in self.subtrees)


def resolve_selection(selection: Iterable[str], path_map: Dict[str, str]) -> ExtractionSet:
    wanted = [canon_selection(s) for s in selection]
    exact = set(wanted)
    matched: Set[str] = set()
    to_extract = ExtractionSet()

    for token, original in path_map.items():
        base = human_base(original)
        if base in exact:
            to_extract.add(token)
            matched.add(base)
            suffix = pure_original(original).suffix
            if suffix:
                to_extract.add(f"{token}{suffix}")
        prefix = base + "/"
        for h in wanted:
            if h.startswith(prefix):
                to_extract.add(f"{token}/{h[len(prefix):]}")
                matched.add(h)

    for h in exact - matched:
        log.debug("selection %s matches nothing in the archive", h)
    log.debug("extraction set: %s", sorted(to_extract.names))
    return to_extract

# ===============================
# Path reconciliation
# ===============================

_HOME_PATTERNS = (
    (re.compile(r"^(?P<prefix>[A-Za-z]:[\\/]Users[\\/])(?P<user>[^\\/]+)(?P<rest>.*)$", re.IGNORECASE), True),
    (re.compile(r"^(?P<prefix>/home/)(?P<user>[^/]+)(?P<rest>.*)$"), False),
    (re.compile(r"^(?P<prefix>/Users/)(?P<user>[^/]+)(?P<rest>.*)$"), False),
)


def current_home() -> Path:
    env = os.environ.get("TARKEEP_HOME")
    return Path(env) if env else Path.home()


def adjust_path(original: str, home: Any) -> str:
    """Move a path recorded under another user's home into the current home.

    Only the username segment is replaced; the rest of the path is kept
    verbatim. Paths outside a recognised home, or already under the current
    username, come back unchanged.
    """
    home_str = str(home)
    home_str = home_str.rstrip("/\\") or home_str
    current_user = pure_original(home_str).name
    for pattern, case_insensitive in _HOME_PATTERNS:
        m = pattern.match(original)
        if not m:
            continue
        old_user = m.group("user")
        if case_insensitive:
            same = old_user.lower() == current_user.lower()
        else:
            same = old_user == current_user
        if same:
            return original
        adjusted = home_str + m.group("rest")
        log.debug("path adjusted: %s -> %s", original, adjusted)
        return adjusted
    return original


class PathReconciler:
    """Strategy mapping a recorded path to a destination on this machine."""

    def reconcile(self, original: str) -> str:
        return original


class HomeDirReconciler(PathReconciler):
    def __init__(self, home: Any = None) -> None:
        self.home = Path(home) if home is not None else current_home()

    def reconcile(self, original: str) -> str:
        return adjust_path(original, self.home)


class RemapReconciler(PathReconciler):
    """Explicit prefix remap table, longest prefix first, with a fallback."""

    def __init__(self, table: Dict[str, str], fallback: Optional[PathReconciler] = None) -> None:
        stems = [(old.rstrip("/\\"), new.rstrip("/\\") or new) for old, new in table.items()]
        self.table = sorted([s for s in stems if s[0]], key=lambda s: len(s[0]), reverse=True)
        self.fallback = fallback if fallback is not None else PathReconciler()

    def reconcile(self, original: str) -> str:
        for old, new in self.table:
            if original == old:
                return new
            if original.startswith(old) and original[len(old)] in "/\\":
                return new + original[len(old):]
        return self.fallback.reconcile(original)


def locate_existing(path: Any, reconciler: Optional[PathReconciler] = None) -> Optional[Path]:
    p = Path(path)
    if p.exists():
        return p
    reconciler = reconciler if reconciler is not None else HomeDirReconciler()
    adjusted = Path(reconciler.reconcile(str(path)))
    if adjusted.exists():
        log.debug("%s found at %s", path, adjusted)
        return adjusted
    log.debug("neither %s nor %s exists", path, adjusted)
    return None

# ===============================
# Restore executor
# ===============================

class ConflictMode(enum.Enum):
    OVERWRITE = "overwrite"
    SKIP = "skip"
    RENAME = "rename"


@dataclass
class RestoreReport:
    restored: List[Path] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    missing_tokens: List[str] = field(default_factory=list)


def resolve_destination(name: str, path_map: Dict[str, str],
                        reconciler: PathReconciler) -> Optional[Path]:
    root, rest = split_entry_name(name)
    if root not in path_map:
        # lone file stored as token.ext
        token, dot, _ext = root.partition(".")
        if not dot or rest:
            return None
        root = token
    try:
        original = decode_token(root, path_map)
    except InvalidArchive:
        return None
    base = Path(reconciler.reconcile(original))
    if not rest:
        return base
    parts = PurePosixPath(rest).parts
    if ".." in parts:
        return None
    return base.joinpath(*parts)


def next_free_name(dest: Path) -> Path:
    n = 1
    while True:
        candidate = dest.with_name(f"{dest.stem} ({n}){dest.suffix}")
        if not candidate.exists():
            return candidate
        n += 1


def _wanted(member: tarfile.TarInfo, to_extract: Optional[ExtractionSet]) -> bool:
    if member.name == MANIFEST_NAME or not (member.isfile() or member.isdir()):
        return False
    return to_extract is None or member.name in to_extract


def count_restorable(archive: Path, to_extract: Optional[ExtractionSet]) -> int:
    total = 0
    with _open_stream(archive) as tar:
        for member in _members(tar, archive):
            if _wanted(member, to_extract):
                total += 1
    return max(total, 1)


def _extract_member(tar: tarfile.TarFile, member: tarfile.TarInfo, dest: Path,
                    on_conflict: ConflictMode) -> Optional[Path]:
    try:
        if member.isdir():
            dest.mkdir(parents=True, exist_ok=True)
            return dest
        if dest.exists():
            if on_conflict is ConflictMode.SKIP:
                log.debug("keeping existing %s", dest)
                return None
            if on_conflict is ConflictMode.RENAME:
                dest = next_free_name(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        src = tar.extractfile(member)
        with src, open(dest, "wb") as out:
            shutil.copyfileobj(src, out, MIN_COPY_BUFFER)
        os.chmod(dest, member.mode & 0o777)
        os.utime(dest, (member.mtime, member.mtime))
    except OSError as e:
        raise IoFailure(dest, e) from e
    return dest


def restore_backup(archive: Any,
                   selection: Optional[Iterable[str]] = None,
                   progress: Optional[Progress] = None,
                   build_marker: Optional[str] = None,
                   reconciler: Optional[PathReconciler] = None,
                   on_conflict: ConflictMode = ConflictMode.OVERWRITE) -> RestoreReport:
    """Restore an archive, or only the human paths in ``selection``.

    The manifest is validated before anything touches the filesystem.
    Entries that resolve to no known token are skipped.
    """
    progress = progress if progress is not None else Progress()
    archive = Path(archive)
    path_map = read_manifest(archive, build_marker).path_map()
    reconciler = reconciler if reconciler is not None else HomeDirReconciler()

    to_extract = resolve_selection(selection, path_map) if selection is not None else None
    total = count_restorable(archive, to_extract)
    report = RestoreReport()
    present: Set[str] = set()
    done = 0

    with _open_stream(archive) as tar:
        for member in _members(tar, archive):
            name = member.name
            if name == MANIFEST_NAME:
                continue
            present.add(token_of(split_entry_name(name)[0]))
            if not _wanted(member, to_extract):
                continue
            dest = resolve_destination(name, path_map, reconciler)
            if dest is None:
                log.warning("skipping %s (no matching token)", name)
                report.skipped.append(name)
                continue
            written = _extract_member(tar, member, dest, on_conflict)
            if written is None:
                report.skipped.append(name)
            else:
                log.debug("restored %s -> %s", name, written)
                report.restored.append(written)
            done += 1
            progress.set(min(done * 100 // total, 100))

    report.missing_tokens = sorted(t for t in path_map if t not in present)
    for token in report.missing_tokens:
        log.warning("no payload for %s (%s), archive may be incomplete", token, path_map[token])
    progress.done()
    return report

# ===============================
# Templates
# ===============================

def save_template(paths: Iterable[Any], template_file: Any) -> None:
    template_file = Path(template_file)
    payload = json.dumps({"paths": [os.path.abspath(p) for p in paths]}, indent=2)
    tmp = template_file.with_name(template_file.name + ".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, template_file)
    except OSError as e:
        _discard(tmp)
        raise SerializationFailure(e) from e


def load_template(template_file: Any,
                  reconciler: Optional[PathReconciler] = None) -> Tuple[List[Path], List[str]]:
    """Read a template; returns (paths usable here, stored paths that were not found)."""
    try:
        data = json.loads(Path(template_file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise SerializationFailure(e) from e
    paths = data.get("paths") if isinstance(data, dict) else None
    if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
        raise SerializationFailure("template has no 'paths' list")
    valid, skipped = [], []
    for p in paths:
        found = locate_existing(p, reconciler)
        if found is None:
            skipped.append(p)
        else:
            valid.append(found)
    return valid, skipped

# ===============================
# Compression post-process
# ===============================

def compress_archive(archive: Any,
                     level: CompressionLevel = CompressionLevel.NORMAL,
                     compressor: Callable[[str, str, CompressionLevel], int] = gzip_tar) -> Path:
    archive = Path(archive)
    out = archive.with_name(archive.name + ".gz")
    status = compressor(str(archive), str(out), level)
    if status != 0:
        raise CompressionFailure(status)
    try:
        archive.unlink()
    except OSError as e:
        raise IoFailure(archive, e) from e
    return out

# ===============================
# CLI
# ===============================

def _advance(pbar: tqdm, pct: int) -> None:
    pct = min(pct, 100)
    if pct > pbar.n:
        pbar.update(pct - pbar.n)


def run_with_progress(worker: JobWorker, desc: str, func: Callable[..., Any],
                      *args: Any, **kwargs: Any) -> Any:
    progress = Progress()
    future = worker.submit(func, *args, progress=progress, **kwargs)
    with tqdm(total=100, desc=desc, unit="%", dynamic_ncols=True, colour="GREEN") as pbar:
        while not future.done():
            _advance(pbar, progress.get())
            time.sleep(POLL_INTERVAL)
        _advance(pbar, progress.get())
    return future.result()


def _parse_remaps(pairs: List[str]) -> Dict[str, str]:
    table = {}
    for pair in pairs:
        old, sep, new = pair.partition("=")
        if not sep or not old or not new:
            raise SystemExit(f"--remap expects OLD=NEW, got {pair!r}")
        table[old] = new
    return table


def _reconciler_from(args: argparse.Namespace) -> PathReconciler:
    home = HomeDirReconciler()
    remaps = _parse_remaps(getattr(args, "remap", None) or [])
    return RemapReconciler(remaps, fallback=home) if remaps else home


def cmd_backup(args: argparse.Namespace, worker: JobWorker) -> None:
    inputs = list(args.inputs)
    if args.template:
        valid, skipped = load_template(args.template, _reconciler_from(args))
        if skipped:
            print(f"Template loaded with {len(skipped)} paths skipped:", file=sys.stderr)
            for p in skipped:
                print(f"  {p}", file=sys.stderr)
        inputs.extend(valid)
    if not inputs:
        raise SystemExit("Nothing to back up: pass paths or --template")

    archive = run_with_progress(worker, "Backing up", write_backup, inputs, args.dest,
                                build_marker=args.fingerprint, reserve_percent=args.reserve)
    if args.gzip:
        archive = compress_archive(archive, CompressionLevel[args.level.upper()])
    print(f"✓ Backup created: {archive}")


def cmd_tree(args: argparse.Namespace, worker: JobWorker) -> None:
    entries, path_map = worker.submit(read_archive, args.archive, args.fingerprint).result()
    tree = build_tree(entries, path_map)
    for line in render_tree(tree):
        print(line)
    print(f"{len(path_map)} items, {len(entries)} entries")


def _selection_from(args: argparse.Namespace) -> Optional[List[str]]:
    if not args.select and not args.select_from:
        return None
    selection = list(args.select or [])
    if args.select_from:
        try:
            text = Path(args.select_from).read_text(encoding="utf-8")
        except OSError as e:
            raise IoFailure(args.select_from, e) from e
        selection.extend(line.strip() for line in text.splitlines() if line.strip())
    return selection


def cmd_restore(args: argparse.Namespace, worker: JobWorker) -> None:
    report = run_with_progress(worker, "Restoring", restore_backup, args.archive,
                               _selection_from(args),
                               build_marker=args.fingerprint,
                               reconciler=_reconciler_from(args),
                               on_conflict=ConflictMode(args.on_conflict))
    print(f"✓ Restore complete: {len(report.restored)} restored, {len(report.skipped)} skipped")
    if report.missing_tokens:
        print(f"Warning: {len(report.missing_tokens)} backed-up items have no data in this archive",
              file=sys.stderr)


def cmd_template_save(args: argparse.Namespace, worker: JobWorker) -> None:
    save_template(args.paths, args.template)
    print(f"✓ Template saved: {args.template}")


def cmd_template_load(args: argparse.Namespace, worker: JobWorker) -> None:
    valid, skipped = load_template(args.template, _reconciler_from(args))
    for p in valid:
        print(p)
    for p in skipped:
        print(f"missing: {p}", file=sys.stderr)
    print(f"✓ Template loaded: {len(valid)} paths, {len(skipped)} skipped")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="tarkeep")
    ap.add_argument("--fingerprint", default=None,
                    help="Build marker to write and require (default: $TARKEEP_FINGERPRINT or built-in)")
    ap.add_argument("--verbose", action="store_true", help="Debug logging")
    sp = ap.add_subparsers(dest="cmd", required=True)

    p_backup = sp.add_parser("backup", help="Back up files and folders into a new archive")
    p_backup.add_argument("inputs", nargs="*", type=Path)
    p_backup.add_argument("--dest", required=True, type=Path, help="Folder the archive is written to")
    p_backup.add_argument("--template", type=Path, help="Add the paths stored in a template")
    p_backup.add_argument("--reserve", type=int, default=0,
                          help="Percent of the destination volume that must stay free (default: 0)")
    p_backup.add_argument("--gzip", action="store_true", help="Compress the finished archive")
    p_backup.add_argument("--level", choices=["fast", "normal", "maximum"], default="normal")
    p_backup.add_argument("--remap", action="append", metavar="OLD=NEW",
                          help="Path prefix remap used when resolving template paths")

    p_tree = sp.add_parser("tree", help="Show what an archive contains")
    p_tree.add_argument("archive", type=Path)

    p_restore = sp.add_parser("restore", help="Restore an archive, or part of it")
    p_restore.add_argument("archive", type=Path)
    p_restore.add_argument("--select", action="append", metavar="PATH",
                           help="Original path to restore (repeatable)")
    p_restore.add_argument("--select-from", type=Path, metavar="FILE",
                           help="File with one original path per line")
    p_restore.add_argument("--on-conflict", choices=[m.value for m in ConflictMode],
                           default=ConflictMode.OVERWRITE.value)
    p_restore.add_argument("--remap", action="append", metavar="OLD=NEW",
                           help="Restore paths under OLD into NEW instead")

    p_tsave = sp.add_parser("template-save", help="Store a list of paths as a template")
    p_tsave.add_argument("template", type=Path)
    p_tsave.add_argument("paths", nargs="+")

    p_tload = sp.add_parser("template-load", help="Check which template paths exist here")
    p_tload.add_argument("template", type=Path)
    p_tload.add_argument("--remap", action="append", metavar="OLD=NEW")
    return ap


COMMANDS = {
    "backup": cmd_backup,
    "tree": cmd_tree,
    "restore": cmd_restore,
    "template-save": cmd_template_save,
    "template-load": cmd_template_load,
}


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    worker = JobWorker(name="tarkeep_worker", params={"LOGGER": log, "DEBUG_MODE": args.verbose})
    try:
        COMMANDS[args.cmd](args, worker)
    except TarkeepError as e:
        print(f"✗ {args.cmd} failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        worker.shutdown()


if __name__ == "__main__":
    main()
