# Local entry point: uvicorn main:app --reload
import uvicorn

from bikehub.main import app  # noqa: F401

if __name__ == "__main__":
    uvicorn.run("bikehub.main:app", host="127.0.0.1", port=8000, reload=True)
