# portal/routes/community.py
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import ValidationError

from portal.routes.deps import get_ideas
from portal.services.auth import get_identity_gate, require_verified
from portal.services.engagement import (
    IDEA_STATUSES, STATUS_LABELS, IdeaBoard, IdeaFilters, IdeaIn, idea_stats,
)
from portal.services.session import Identity, IdentityGate

router = APIRouter(prefix="/community", tags=["community"])

_IMAGE_EXTS = {"png", "jpg", "jpeg", "webp", "gif"}


@router.get("/ideas")
def list_ideas(sort: str = "popular", genre: str = "all", status: str = "all", search: str = "",
               gate: IdentityGate = Depends(get_identity_gate),
               board: IdeaBoard = Depends(get_ideas)):
    if status != "all" and status not in IDEA_STATUSES:
        raise HTTPException(400, f"Unknown status: {status}")
    ideas = board.list_ideas(IdeaFilters(sort=sort, genre=genre, status=status, search=search))

    uid = gate.current_user_id() if gate.is_authenticated() else None
    supported = set(board.supported_by(uid)) if uid else set()
    for it in ideas:
        # voter ids stay server-side
        it.pop("supporters", None)
        it["supported"] = it["id"] in supported
        it["statusLabel"] = STATUS_LABELS.get(it.get("status"), it.get("status"))
    return {"items": ideas}


@router.get("/stats")
def stats(board: IdeaBoard = Depends(get_ideas)):
    return idea_stats(board.list_ideas())


@router.post("/ideas")
def submit_idea(
    title: str = Form(...),
    logline: str = Form(...),
    description: str = Form(""),
    genre: str = Form("Other"),
    submitter: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(require_verified),
    board: IdeaBoard = Depends(get_ideas),
):
    try:
        idea = IdeaIn(title=title, logline=logline, description=description,
                      genre=genre, submitter=submitter)
    except ValidationError as e:
        raise HTTPException(422, e.errors(include_context=False))

    image_url = None
    if image is not None and image.filename:
        ext = image.filename.rsplit(".", 1)[-1].lower()
        if ext not in _IMAGE_EXTS:
            raise HTTPException(400, "Please upload an image file.")
        data = image.file.read(board.image_max_bytes + 1)
        try:
            image_url = board.upload_image(data, image.filename, image.content_type)
        except ValueError as e:
            raise HTTPException(413, str(e))
        except RuntimeError as e:
            raise HTTPException(503, str(e))

    idea_id = board.submit_idea(identity.id, idea, image_url)
    if idea_id is None:
        raise HTTPException(503, "Idea submissions are unavailable right now")
    return {"ok": True, "id": idea_id, "imageUrl": image_url}


@router.post("/ideas/{idea_id}/support")
def toggle_support(idea_id: str, identity: Identity = Depends(require_verified),
                   board: IdeaBoard = Depends(get_ideas)):
    res = board.toggle_support(identity.id, idea_id)
    if res.ok:
        return {"ok": True, "supported": res.supported, "supportCount": res.support_count}
    if res.reason == "not_found":
        raise HTTPException(404, "Idea not found")
    if res.reason == "in_flight":
        raise HTTPException(409, "Support change already in progress")
    raise HTTPException(503, "Support is unavailable right now")
