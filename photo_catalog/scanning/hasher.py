import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Iterable, Iterator, Tuple, Optional, Union

from .. import config
from ..exceptions import FileHashError

class FileHasher:
    def compute_sha256(self, path: Union[str, Path]) -> str:
        """
        Reads the entire file and returns its lowercase hex SHA-256.
        Raises FileHashError if the file cannot be read.
        """
        h = hashlib.sha256()
        try:
            with open(path, 'rb') as f:
                while chunk := f.read(config.HASH_CHUNK_SIZE):
                    h.update(chunk)
        except OSError as e:
            raise FileHashError(f"Failed to hash {path}: {e}") from e
        return h.hexdigest()

    def hash_many(self,
                  paths: Iterable[str],
                  max_workers: int = config.HASH_MAX_WORKERS) -> Iterator[Tuple[str, Optional[str], Optional[Exception]]]:
        """
        Hashes files on a small thread pool and yields (path, digest, error)
        as each finishes. Exactly one of digest/error is set.

        The generator runs on the caller's thread, so anything the caller does
        with a result (catalog writes included) stays serialized. Closing the
        generator early cancels the hashes that have not started yet.
        """
        executor = ThreadPoolExecutor(max_workers=max(1, max_workers))
        try:
            futures = {executor.submit(self.compute_sha256, p): p for p in paths}
            for future in as_completed(futures):
                path = futures[future]
                try:
                    yield path, future.result(), None
                except FileHashError as e:
                    logging.warning(str(e))
                    yield path, None, e
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
