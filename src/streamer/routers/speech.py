"""Speech API routes: dispatch requests, command stream, avatar images."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sse_starlette.sse import EventSourceResponse

from ..avatars import AvatarStore
from ..errors import DispatchError, GenerationError, SynthesisError
from ..schemas.speech import AvatarList, SpeechAccepted, SpeechRequestPayload
from ..speech import Dispatcher, SpeechRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["speech"])


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_avatar_store(request: Request) -> AvatarStore:
    return request.app.state.avatar_store


@router.post("/speech", response_model=SpeechAccepted)
async def dispatch_speech(
    payload: SpeechRequestPayload,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> SpeechAccepted:
    """Queue a line of speech; optionally wait until it has been spoken."""

    try:
        job = dispatcher.dispatch(
            SpeechRequest(
                text=payload.text,
                image_ref=payload.image_url,
                interrupt=payload.interrupt,
                direct=payload.direct,
            )
        )
    except DispatchError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    if not payload.wait:
        return SpeechAccepted(job_id=job.id, text=payload.text)

    try:
        segments = await job.collect()
    except (GenerationError, SynthesisError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SpeechAccepted(job_id=job.id, text=payload.text, segments=segments)


@router.get("/stream", response_model=None)
async def stream_commands(
    request: Request,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> EventSourceResponse:
    """Relay presentation commands to a display client as Server-Sent Events."""

    subscription = dispatcher.subscribe()
    logger.info(
        "Display client connected (%d listening)",
        dispatcher.channel.subscriber_count,
    )

    async def event_publisher():
        try:
            async for stamped in subscription:
                if await request.is_disconnected():
                    break
                yield stamped.to_sse()
        finally:
            subscription.close()
            logger.info("Display client disconnected")

    return EventSourceResponse(event_publisher())


@router.get("/avatars", response_model=AvatarList)
async def list_avatars(
    avatars: AvatarStore = Depends(get_avatar_store),
) -> AvatarList:
    return AvatarList(avatars=avatars.list_available())


@router.get("/avatar/{name}")
async def get_avatar(
    name: str,
    avatars: AvatarStore = Depends(get_avatar_store),
) -> Response:
    image = avatars.get_image(name)
    if image is None:
        raise HTTPException(status_code=404, detail=f"Avatar {name} not found")
    return Response(
        content=image,
        media_type=avatars.media_type(avatars.resolve(name).name),
        headers={"Cache-Control": "public, max-age=3600"},
    )


__all__ = ["get_avatar_store", "get_dispatcher", "router"]
