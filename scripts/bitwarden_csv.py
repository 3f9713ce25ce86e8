import csv
from typing import Iterable, TextIO

from pass_entries import FIELD_NAMES, CredentialRecord, record_to_dict


def write_csv(out: TextIO, records: Iterable[CredentialRecord]) -> int:
    """Write a Bitwarden import header plus one row per record; return the row count.

    Write errors (OSError, csv.Error) are not caught here.
    """
    writer = csv.DictWriter(out, fieldnames=FIELD_NAMES, lineterminator="\n")
    writer.writeheader()
    count = 0
    for record in records:
        writer.writerow(record_to_dict(record))
        count += 1
    return count
