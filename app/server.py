import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException, UploadFile, File

from audio_fingerprinter import InvalidInputError
from recognizer import SongRecognizer

logger = logging.getLogger(__name__)

app = FastAPI()

UPLOAD_DIR = Path(os.environ.get("FINGERPRINT_UPLOAD_DIR", "uploads"))
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
MAX_BYTES = int(os.environ.get("FINGERPRINT_MAX_UPLOAD_MB", "50")) * 1024 * 1024

QUERY_DIR = Path(os.environ.get("FINGERPRINT_QUERY_DIR", "query"))
QUERY_DIR.mkdir(parents=True, exist_ok=True)

recognizer = SongRecognizer()


async def save_upload(audio: UploadFile, directory: Path) -> Path:
    filename = Path(audio.filename or "unnamed_audio_file").name
    dest = directory / filename
    total = 0

    with dest.open("wb") as f:
        while True:
            chunk = await audio.read(1024 * 1024)
            if not chunk:
                break
            total += len(chunk)
            if total > MAX_BYTES:
                f.close()
                dest.unlink(missing_ok=True)
                raise HTTPException(status_code=413, detail="File too large")
            f.write(chunk)

    logger.info("Received %s (%d bytes)", filename, total)
    return dest


@app.get("/")
def home():
    return {
        "title": "Audio Fingerprinting",
        "songs": recognizer.database.song_names(),
    }


@app.post("/upload")
async def upload_audio(audio: UploadFile = File(...)):
    name = Path(audio.filename or "unnamed_audio_file").stem
    if recognizer.database.song_id(name) is not None:
        raise HTTPException(status_code=409, detail=f"{name} is already indexed")

    dest = await save_upload(audio, UPLOAD_DIR)
    try:
        song_id = recognizer.index_file(dest)
    except InvalidInputError as e:
        dest.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        dest.unlink(missing_ok=True)
        logger.exception("Could not index %s", dest.name)
        raise HTTPException(status_code=422, detail=f"Could not decode audio: {e}")

    return {"filename": dest.name, "song": dest.stem, "song_id": song_id}


@app.post("/predict")
async def process_query(audio: UploadFile = File(...)):
    dest = await save_upload(audio, QUERY_DIR)
    try:
        matches = recognizer.match(recognizer.to_frequency_domain(recognizer.load_audio(dest)))
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Could not recognize %s", dest.name)
        raise HTTPException(status_code=422, detail=f"Could not decode audio: {e}")
    finally:
        try:
            dest.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Error deleting %s: %s", dest, e.strerror)

    return {
        "results": [str(m) for m in matches],
        "matches": [{"song": m.song_name, "score": m.score} for m in matches],
    }
