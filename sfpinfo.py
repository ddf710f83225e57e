import sfpack
import sys
import hexdump

def dump(s: sfpack.SFP, raw: bool=False):
    print(s.header)
    print(f"label: {s.label()!r}")

    for path, offset, entry in s.walk():
        if entry.is_dir:
            print(f"{offset:08x} {path}/ ({len(s.children(entry))} entries)")
        else:
            print(f"{offset:08x} {path} .. {int(entry.data_length)} bytes @ {entry.start_offset:08x} ctime={entry.created_time} mtime={entry.modified_time}")

        if raw:
            hexdump.hexdump(s.read_raw_entry(offset))

def main(argv: list=None) -> int:
    if argv is None:
        argv = sys.argv

    args = [a for a in argv[1:] if a != "-x"]
    if len(args) != 1:
        print("usage: sfpinfo archive.sfp [-x]", file=sys.stderr)
        return 1

    try:
        with open(args[0], "rb") as f:
            dump(sfpack.SFP(f), "-x" in argv[1:])

    except sfpack.CorruptArchiveError as e:
        print(f"error: {args[0]}: corrupt archive: {e}", file=sys.stderr)
        return 1

    except OSError as e:
        print(f"error: {args[0]}: {e}", file=sys.stderr)
        return 1

    return 0

def run():
    sys.exit(main())

if __name__ == "__main__":
    run()
