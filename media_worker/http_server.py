import os
import logging
from typing import Any, Dict, Optional
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn
from threading import Thread

from .errors import QueueFullError
from .pipeline.util import UploadTooLargeError, save_upload

logger = logging.getLogger("media_worker")


class SubmitRequest(BaseModel):
    input_ref: str
    options: Optional[Dict[str, Any]] = None


def create_app(service) -> FastAPI:
    """Build the job API around a WorkerService"""
    app = FastAPI(title="Media Worker API")

    @app.get("/healthz")
    async def health_check():
        """Health check endpoint"""
        if service.orchestrator is None:
            raise HTTPException(status_code=503, detail="Worker not initialized")
        return {"ok": True, "status": "healthy"}

    @app.post("/jobs", status_code=202)
    def submit_job(request: SubmitRequest):
        """Queue a media file for processing"""
        try:
            job_id = service.submit(request.input_ref, request.options)
        except QueueFullError as e:
            raise HTTPException(status_code=503, detail=e.message)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"job_id": job_id}

    @app.post("/uploads", status_code=201)
    def upload_media(file: UploadFile = File(...)):
        """Store a media file under DATA_DIR and return its input_ref"""
        config = service.config
        try:
            path = save_upload(file.file, file.filename, config.uploads_dir,
                               max_bytes=config.MAX_UPLOAD_MB * 1024 * 1024)
        except UploadTooLargeError as e:
            raise HTTPException(status_code=413, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except OSError as e:
            logger.error(f"Failed to store upload {file.filename}: {e}")
            raise HTTPException(status_code=500, detail="Could not store upload")
        finally:
            file.file.close()
        input_ref = os.path.relpath(path, config.DATA_DIR)
        return {"input_ref": input_ref, "filename": file.filename, "size": os.path.getsize(path)}

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str):
        """Current stage and status of a job"""
        status = service.status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return status

    @app.post("/jobs/{job_id}/cancel")
    def cancel_job(job_id: str):
        """Request cooperative cancellation"""
        accepted = service.cancel(job_id)
        return JSONResponse(status_code=202, content={"job_id": job_id, "accepted": accepted})

    @app.get("/stats")
    def get_stats():
        """Get worker statistics"""
        return service.get_stats()

    return app


class HealthServer:
    def __init__(self, service, port: int = 8000):
        self.service = service
        self.port = port
        self.app = create_app(service)
        self.server: Optional[uvicorn.Server] = None
        self.server_thread = None
        self.running = False

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.port,
            log_level="warning",  # Reduce uvicorn logging
            access_log=False
        )
        self.server = uvicorn.Server(config)

        def run_server():
            try:
                self.server.run()
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

        logger.info(f"HTTP server started on port {self.port}")

    def stop(self):
        """Stop the HTTP server"""
        if self.server:
            self.server.should_exit = True
        self.running = False
        logger.info("HTTP server stopped")


def start_health_server(service) -> Optional[HealthServer]:
    """Start the HTTP server if enabled"""
    if service.config.ENABLE_HTTP_SERVER:
        server = HealthServer(service, service.config.HTTP_PORT)
        server.start()
        return server
    return None
