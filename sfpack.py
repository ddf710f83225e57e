from construct import *
import errno
import os
import sys
import threading
import typing

CODING = "latin-1"
BUFFER_SIZE = 2048
DIR_MODE = 0o775

sfp_header_data = Struct(
    "magic" / Hex(Int32ul),
    "version" / Hex(Int32ul),
    "unk1" / Hex(Int64ul),
    "first_dir_offset" / Hex(Int64ul),
    "name_table_offset" / Hex(Int64ul),
    "data_offset" / Hex(Int64ul),
    "archive_size" / Hex(Int64ul),
    "package_label_offset" / Hex(Int64ul),
    "unk3" / Hex(Int64ul),
)

sfp_entry_data = Struct(
    "magic" / Hex(Int32ul),
    "name_offset" / Hex(Int64ul),
    "unk1" / Hex(Int32ul),
    "parent_offset" / Hex(Int64ul),
    "is_dir" / Hex(Int32ul),
    "file_length" / Hex(Int64ul),
    "modified_time" / Int64ul,
    "created_time" / Int64ul,
    "unk2" / Hex(Int64ul),
    "unk3" / Hex(Int64ul),
    "start_offset" / Hex(Int64ul),
    "data_length" / Hex(Int32ul),
)

HEADER_SIZE = sfp_header_data.sizeof()  # 0x40
ENTRY_SIZE = sfp_entry_data.sizeof()  # 0x50


class CorruptArchiveError(Exception):
    pass


def warn(msg: str):
    print(f"warning: {msg}", file=sys.stderr)


class SFP():
    """Read-only view over an open .sfp archive.

    The header and the name table are loaded once; directory entries are
    read on demand, so memory use does not grow with the size of the tree.
    """

    def __init__(self, file):
        self.file = file
        self.file.seek(0)

        try:
            self.header = sfp_header_data.parse(self.file.read(HEADER_SIZE))
        except StreamError as e:
            raise CorruptArchiveError(f"truncated header: {e}") from e

        table_size = self.header.data_offset - self.header.name_table_offset
        if table_size < 0:
            raise CorruptArchiveError(f"name table ends before it starts: {self.header.name_table_offset:#x} > {self.header.data_offset:#x}")

        self.file.seek(self.header.name_table_offset)
        self.name_table = self.file.read(table_size)
        if len(self.name_table) < table_size:
            raise CorruptArchiveError(f"name table truncated at {self.header.name_table_offset + len(self.name_table):#x}")

        self.file.seek(0, os.SEEK_END)
        self.file_size = self.file.tell()

        if self.header.archive_size != self.file_size:
            warn(f"header archive size {self.header.archive_size:#x} does not match file size {self.file_size:#x}")

        if self.header.first_dir_offset + ENTRY_SIZE > self.file_size:
            warn(f"root entry {self.header.first_dir_offset:#x} lies past the end of the file")

    def get_name(self, name_offset: int) -> str:
        if name_offset == 0:
            return ""

        start = name_offset - self.header.name_table_offset
        if start < 0 or start >= len(self.name_table):
            raise CorruptArchiveError(f"name offset {name_offset:#x} outside of name table")

        end = self.name_table.find(b"\0", start)
        if end < 0:
            end = len(self.name_table)

        return self.name_table[start:end].decode(CODING)

    def label(self) -> str:
        if self.header.package_label_offset == 0:
            return ""

        self.file.seek(self.header.package_label_offset)
        try:
            return NullTerminated(GreedyBytes).parse_stream(self.file).decode(CODING)
        except StreamError as e:
            raise CorruptArchiveError(f"unterminated package label at {self.header.package_label_offset:#x}") from e

    def read_raw_entry(self, offset: int) -> bytes:
        self.file.seek(offset)
        raw = self.file.read(ENTRY_SIZE)
        if len(raw) < ENTRY_SIZE:
            raise CorruptArchiveError(f"entry at {offset:#x} truncated ({len(raw)} of {ENTRY_SIZE} bytes)")

        return raw

    def read_entry(self, offset: int):
        return sfp_entry_data.parse(self.read_raw_entry(offset))

    def children(self, entry):
        return range(entry.start_offset, entry.start_offset + entry.data_length, ENTRY_SIZE)

    def walk(self, offset: int=None, prefix: str="", cancel: threading.Event=None):
        """Yield (path, offset, entry) for every entry below offset, pre-order.

        Each stack frame holds the remaining child offsets of one open
        directory, so depth is bounded by memory rather than the interpreter.
        """
        if offset is None:
            offset = self.header.first_dir_offset

        stack = [(iter((offset,)), prefix, frozenset())]
        while stack:
            pending, prefix, parents = stack[-1]
            offset = next(pending, None)
            if offset is None:
                stack.pop()
                continue

            if cancel is not None and cancel.is_set():
                return

            if offset in parents:
                raise CorruptArchiveError(f"directory {prefix} contains its own parent {offset:#x}")

            entry = self.read_entry(offset)
            name = self.get_name(entry.name_offset)
            if ".." in name.replace("\\", "/").split("/"):
                raise CorruptArchiveError(f"entry at {offset:#x} escapes its directory: {name!r}")

            path = prefix + name
            yield path, offset, entry

            if entry.is_dir:
                child_prefix = path if path.endswith("/") else path + "/"
                stack.append((iter(self.children(entry)), child_prefix, parents | {offset}))


def copy_data(src: typing.BinaryIO, dst: typing.BinaryIO, length: int, buffer_size: int=BUFFER_SIZE):
    remaining = length
    while remaining > 0:
        want = min(buffer_size, remaining)
        chunk = src.read(want)
        if len(chunk) < want:
            raise CorruptArchiveError(f"file data truncated, {remaining - len(chunk)} bytes missing")

        dst.write(chunk)
        remaining -= want


# disk full or over quota: every later write fails the same way
SYSTEMIC_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def _is_systemic(e: OSError) -> bool:
    return e.errno in SYSTEMIC_ERRNOS


def extract_entry(sfp: SFP, path: str, entry) -> bool:
    """Create the directory or file for one entry; False if it was skipped."""
    if entry.is_dir:
        try:
            os.makedirs(path, mode=DIR_MODE, exist_ok=True)
        except OSError as e:
            if _is_systemic(e): raise
            warn(f"cannot create directory {path}: {e}")
            return False

        return True

    try:
        out = open(path, "wb")
    except OSError as e:
        if _is_systemic(e): raise
        warn(f"cannot create file {path}: {e}")
        return False

    with out:
        sfp.file.seek(entry.start_offset)
        copy_data(sfp.file, out, entry.data_length)

    # created_time stamps both atime and mtime, modified_time is not used
    try:
        os.utime(path, (entry.created_time, entry.created_time))
    except (OSError, OverflowError) as e:
        warn(f"cannot set time on {path}: {e}")

    return True


def extract(sfp: SFP, out_root: str, cancel: threading.Event=None):
    os.makedirs(out_root, mode=DIR_MODE, exist_ok=True)

    files = 0
    dirs = 0
    for path, _, entry in sfp.walk(prefix=out_root.rstrip("/") + "/", cancel=cancel):
        print(path)

        if extract_entry(sfp, path, entry):
            if entry.is_dir:
                dirs += 1
            else:
                files += 1

    return files, dirs


def output_dir(archive_path: str) -> str:
    root, ext = os.path.splitext(archive_path)
    if not ext:
        return f"{archive_path}_extracted"

    return root


def extract_file(archive_path: str, out_root: str=None):
    if out_root is None:
        out_root = output_dir(archive_path)

    with open(archive_path, "rb") as f:
        return extract(SFP(f), out_root)


def main(argv: list=None) -> int:
    if argv is None:
        argv = sys.argv

    if len(argv) < 2:
        print("usage: sfpack archive.sfp|directory [output]", file=sys.stderr)
        return 1

    out = argv[2] if len(argv) > 2 else None

    if os.path.isdir(argv[1]):
        # every *.sfp in the directory, each into its own folder
        jobs = []
        for f in sorted(os.listdir(argv[1])):
            if not f.lower().endswith(".sfp"): continue
            a = os.path.join(argv[1], f)
            jobs.append((a, None if out is None else os.path.join(out, output_dir(f))))

    else:
        jobs = [(argv[1], out)]

    files = 0
    dirs = 0
    failed = False
    for a, o in jobs:
        try:
            f, d = extract_file(a, o)

        except CorruptArchiveError as e:
            print(f"error: {a}: corrupt archive: {e}", file=sys.stderr)
            failed = True
            continue

        except OSError as e:
            print(f"error: {a}: {e}", file=sys.stderr)
            if _is_systemic(e):
                return 1

            failed = True
            continue

        files += f
        dirs += d

    print(f"{files} file{'' if files == 1 else 's'} extracted into {dirs} folder{'' if dirs == 1 else 's'}.", file=sys.stderr)
    return 1 if failed else 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
