# backend/ram_api/storage.py
import os

import aiofiles
from fastapi import UploadFile

CHUNK_SIZE = 1024 * 1024


def scenario_file_path(storage_dir: str, scenario_id: int, file_name: str) -> str:
    return os.path.join(storage_dir, f"scenario-{scenario_id}", file_name)


async def save_upload_file(upload_file: UploadFile, destination: str):
    """Stream ``upload_file`` to ``destination``, creating the scenario folder."""
    os.makedirs(os.path.dirname(destination), exist_ok=True)
    async with aiofiles.open(destination, "wb") as out_file:
        while True:
            chunk = await upload_file.read(CHUNK_SIZE)
            if not chunk:
                break
            await out_file.write(chunk)
    await upload_file.close()
