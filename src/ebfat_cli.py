import argparse
import contextlib
import logging
import sys
from typing import Optional

import ebfat

logger = logging.getLogger(__name__)

Default_Label = "THELABEL"


def parser_get() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ebfat", description="Pack files into a FAT12 disk image")
    parser.add_argument("fili", nargs="*", metavar="file")
    parser.add_argument("-l", "--label", default=Default_Label)
    parser.add_argument("-o", "--output", help="image path, stdout if omitted")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = parser_get().parse_args(argv)
    level = (logging.WARNING, logging.INFO)[args.verbose] if args.verbose < 2 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s", stream=sys.stderr)

    with contextlib.ExitStack() as stack:
        fili = []
        try:
            for file_nom in args.fili:
                logger.info(f"Opening {file_nom}")
                file = ebfat.InputFile.from_path(file_nom)
                stack.callback(file.content.close)
                fili.append(file)
            if args.output:
                out = stack.enter_context(open(args.output, "wb"))
            else:
                out = sys.stdout.buffer
            layout = ebfat.create_fat(fili, out, args.label)
            out.flush()
        except (ebfat.EbfatError, OSError) as err:
            logger.critical(f"Failed to create FAT image: {err}")
            return 1
    logger.info(f"Wrote {layout.sector_numb} sectors for {len(fili)} file(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
