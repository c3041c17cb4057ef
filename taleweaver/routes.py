"""FastAPI endpoints under /api.

Every endpoint forwards one intent to the app's GameOrchestrator and returns
the resulting session view. Phase and re-entrancy checks live in the
orchestrator; InvalidTransitionError is mapped to 409 by the app.
"""

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from pydantic import BaseModel, ValidationError

from taleweaver import config
from taleweaver.generation import GenerationError
from taleweaver.models import CharacterDraft
from taleweaver.orchestrator import GameOrchestrator

router = APIRouter()


class CreationBody(BaseModel):
    name: str
    world: str | None = None
    backstory: str | None = None
    world_details: str | None = None


class FinalizeBody(BaseModel):
    draft: CharacterDraft
    is_from_known_world: bool = False


class TurnBody(BaseModel):
    input: str


class CompanionBody(BaseModel):
    name: str


class UpdateCharacter(BaseModel):
    backstory: str | None = None
    drop_item: str | None = None
    dismiss_companion: str | None = None


def _orchestrator(request: Request) -> GameOrchestrator:
    return request.app.state.orchestrator


def _view(orch: GameOrchestrator) -> dict:
    view = orch.session.model_dump(mode="json")
    view["can_undo"] = orch.can_undo
    notice = orch.notice
    view["notice"] = notice.model_dump() if notice else None
    continuation = orch.continuation
    view["continuation"] = continuation.model_dump(mode="json") if continuation else None
    return view


@router.get("/health")
async def health():
    return {"status": "ok"}


# ── Session ───────────────────────────────────────────────


@router.get("/session")
async def get_session(request: Request):
    return _view(_orchestrator(request))


@router.get("/saves")
async def list_saves(request: Request):
    orch = _orchestrator(request)
    saves = orch.refresh_saves()
    return {
        "saves": [s.model_dump(mode="json") for s in saves],
        "warning": orch.session.last_error,
    }


# ── Creation ──────────────────────────────────────────────


@router.post("/creation")
async def begin_creation(body: CreationBody, request: Request, background: BackgroundTasks):
    """Fetch the creation scaffold, then fill in its tabs in the background."""
    orch = _orchestrator(request)
    await orch.begin_creation(body.name, body.world, body.backstory, body.world_details)
    if orch.session.creator_options is not None:
        background.add_task(orch.prefetch_tab_options)
    return _view(orch)


@router.post("/creation/quick")
async def quick_start(body: CreationBody, request: Request):
    orch = _orchestrator(request)
    await orch.quick_start(body.name, body.world, body.backstory, body.world_details)
    return _view(orch)


@router.post("/creation/tabs/{index}")
async def fetch_tab(index: int, request: Request):
    """Load (or retry) the option lists of one customization tab."""
    orch = _orchestrator(request)
    try:
        await orch.fetch_tab_options(index)
    except GenerationError as e:
        raise HTTPException(502, str(e))
    return _view(orch)


@router.post("/creation/finalize")
async def finalize(body: FinalizeBody, request: Request):
    orch = _orchestrator(request)
    await orch.finalize_character(body.draft, body.is_from_known_world)
    return _view(orch)


# ── Turns ─────────────────────────────────────────────────


@router.post("/turn")
async def submit_turn(body: TurnBody, request: Request):
    orch = _orchestrator(request)
    await orch.submit_turn(body.input)
    return _view(orch)


@router.post("/fate")
async def let_fate_decide(request: Request):
    orch = _orchestrator(request)
    await orch.let_fate_decide()
    return _view(orch)


@router.post("/undo")
async def undo(request: Request):
    orch = _orchestrator(request)
    if not orch.undo():
        raise HTTPException(409, "Nothing to undo")
    return _view(orch)


# ── Saves ─────────────────────────────────────────────────


@router.post("/save")
async def save_game(request: Request):
    orch = _orchestrator(request)
    result = orch.save_game()
    return {"ok": result.ok, "message": result.message, "session": _view(orch)}


@router.post("/load/{save_id}")
async def load_game(save_id: str, request: Request):
    orch = _orchestrator(request)
    orch.refresh_saves()
    if not orch.load_game(save_id):
        raise HTTPException(404, orch.session.last_error)
    return _view(orch)


@router.delete("/saves/{save_id}")
async def delete_game(save_id: str, request: Request):
    orch = _orchestrator(request)
    if not orch.delete_game(save_id):
        raise HTTPException(404, orch.session.last_error)
    return {"saves": [s.model_dump(mode="json") for s in orch.saves]}


# ── Endings and perspective ───────────────────────────────


@router.post("/start-anew")
async def start_anew(request: Request):
    orch = _orchestrator(request)
    orch.start_anew()
    return _view(orch)


@router.post("/continue")
async def continue_as_new(request: Request):
    orch = _orchestrator(request)
    orch.continue_as_new_character()
    return _view(orch)


@router.post("/switch")
async def open_switch(request: Request):
    """Save the current character and list who else lives in this world."""
    orch = _orchestrator(request)
    candidates = orch.open_switch_perspective()
    return {"candidates": [c.model_dump(mode="json") for c in candidates]}


@router.post("/switch-new")
async def switch_new(request: Request):
    orch = _orchestrator(request)
    orch.confirm_switch_new()
    return _view(orch)


@router.post("/switch/{save_id}")
async def confirm_switch(save_id: str, request: Request):
    orch = _orchestrator(request)
    if not orch.confirm_switch(save_id):
        raise HTTPException(404, orch.session.last_error)
    return _view(orch)


# ── Character sheet ───────────────────────────────────────


@router.post("/companions")
async def add_companion(body: CompanionBody, request: Request):
    orch = _orchestrator(request)
    orch.add_companion(body.name)
    return _view(orch)


@router.patch("/character")
async def update_character(body: UpdateCharacter, request: Request):
    """Apply player edits from the character sheet."""
    orch = _orchestrator(request)
    if body.backstory is not None:
        orch.update_backstory(body.backstory)
    if body.drop_item is not None:
        orch.drop_item(body.drop_item)
    if body.dismiss_companion is not None:
        orch.dismiss_companion(body.dismiss_companion)
    return _view(orch)


# ── Settings ──────────────────────────────────────────────


@router.get("/settings")
async def get_settings(request: Request):
    """Current settings. The API key is never echoed back."""
    return request.app.state.settings.model_dump(mode="json", exclude={"api_key"})


@router.patch("/settings")
async def update_settings(body: dict, request: Request):
    """Partial update, persisted to config.json. Takes effect on restart."""
    try:
        updated = config.update_settings(request.app.state.settings, body)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    request.app.state.settings = updated
    return updated.model_dump(mode="json", exclude={"api_key"})
