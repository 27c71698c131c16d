from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from attendance_service.config import settings
from attendance_service.dependencies import Services, create_default_services, get_services, set_services
from attendance_service.errors import (
    AttendanceError,
    CorruptTemplate,
    DuplicateAttendance,
    ExpiredSession,
    FaceNotRegistered,
    InvalidToken,
    LegacyTokenRejected,
    MultipleFacesDetected,
    NoFaceDetected,
    PoorImageQuality,
    SessionInactive,
    SessionNotFound,
    StorageFailure,
)
from attendance_service.frames import BufferedFrameSource, decode_frame, decode_frames
from attendance_service.live import router as live_router
from attendance_service.models import (
    AttendanceRecord,
    CreateSessionRequest,
    CreateSessionResponse,
    FaceRegistrationResult,
    RegisterFaceRequest,
    Session,
    VerificationOutcome,
    VerifyAttendanceRequest,
)
import asyncio
import logging
from typing import List

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("attendance_service")

app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# CORS config
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(live_router, tags=["Live Verification"])

ERROR_STATUS = {
    SessionNotFound: status.HTTP_404_NOT_FOUND,
    FaceNotRegistered: status.HTTP_404_NOT_FOUND,
    SessionInactive: status.HTTP_409_CONFLICT,
    ExpiredSession: status.HTTP_409_CONFLICT,
    DuplicateAttendance: status.HTTP_409_CONFLICT,
    InvalidToken: status.HTTP_400_BAD_REQUEST,
    LegacyTokenRejected: status.HTTP_400_BAD_REQUEST,
    NoFaceDetected: status.HTTP_422_UNPROCESSABLE_ENTITY,
    MultipleFacesDetected: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PoorImageQuality: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StorageFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    CorruptTemplate: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.on_event("startup")
async def startup_event():
    """Initialize storage and detectors on startup."""
    try:
        set_services(create_default_services())
        logger.info("Verification services initialized")
    except Exception as e:
        logger.error(f"Failed to initialize verification services: {e}")
        logger.warning("Attendance verification will not be available")


@app.get("/", tags=["Health"])
async def health_check():
    return {"status": "ok", "service": settings.APP_NAME}


@app.post("/sessions", response_model=CreateSessionResponse, status_code=status.HTTP_201_CREATED, tags=["Sessions"])
def create_session(request: CreateSessionRequest, services: Services = Depends(get_services)):
    session, payload = services.sessions.create_session(request.teacher_id, request.subject, request.location)
    return CreateSessionResponse(session=session, qr_data=payload.to_json())


@app.get("/sessions/{session_id}", response_model=Session, tags=["Sessions"])
def get_session(session_id: str, services: Services = Depends(get_services)):
    return services.sessions.get_session(session_id)


@app.post("/sessions/{session_id}/end", response_model=Session, tags=["Sessions"])
def end_session(session_id: str, services: Services = Depends(get_services)):
    return services.sessions.end_session(session_id)


@app.get("/sessions/{session_id}/attendance", response_model=List[AttendanceRecord], tags=["Sessions"])
def list_session_attendance(session_id: str, services: Services = Depends(get_services)):
    return services.sessions.list_attendance(session_id)


@app.get("/teachers/{teacher_id}/sessions", response_model=List[Session], tags=["Sessions"])
def list_active_sessions(teacher_id: str, services: Services = Depends(get_services)):
    return services.sessions.active_sessions(teacher_id)


@app.post("/faces/register", response_model=FaceRegistrationResult, tags=["Faces"])
def register_face(request: RegisterFaceRequest, services: Services = Depends(get_services)):
    try:
        frame = decode_frame(request.image)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    template, quality = services.enrollment.register(request.student_id, frame)
    return FaceRegistrationResult(
        success=True,
        student_id=template.student_id,
        registered_at=template.registered_at,
        quality=quality,
        message="Face registered successfully",
    )


@app.post("/attendance/verify", response_model=VerificationOutcome, tags=["Attendance"])
async def verify_attendance(request: VerifyAttendanceRequest, services: Services = Depends(get_services)):
    """
    Verify a student from pre-captured frames and mark attendance.

    Workflow:
    1. Validate the QR token against the stored session
    2. Check the GPS fix against the session geofence
    3. Quality-check the first frame, then watch for a blink
    4. Match the following frames against the registered face
    5. Record the student as present, exactly once
    """
    try:
        frames = await asyncio.to_thread(decode_frames, request.frames)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.info(f"Verifying student {request.student.student_id} with {len(frames)} frames")
    return await services.pipeline.verify(
        request.qr_data,
        request.student,
        request.location,
        BufferedFrameSource(frames),
    )
