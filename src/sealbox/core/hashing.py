""" Content hashing of stored blobs; blobs are addressed by the hex digest. """

import hashlib
from pathlib import Path
from typing import Union


CHUNK_SIZE = 65536  # 64KB, one frame payload

def calculate_sha256(file_path: Union[str, Path]) -> str:

    # read in CHUNK_SIZE pieces; blobs can be far larger than memory

    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for data in iter(lambda: f.read(CHUNK_SIZE), b''):
            sha256.update(data)
    return sha256.hexdigest()
