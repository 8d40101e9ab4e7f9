# tapgate/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints and cookies to the handshake in handshake.py.
#   - It MUST NOT implement crypto itself (that lives in tokens.py).
#   - It keeps no session state: every credential travels in a cookie.
#
# Key modules / responsibilities:
#   - config.py    : environment-driven settings (secret, TTLs, allow-list)
#   - policy.py    : tag allow-list (open mode when empty)
#   - tokens.py    : HMAC token codec / signer
#   - handshake.py : issuer, verifier, escalation controller
#   - audit.py     : append-only audit log (security telemetry, forensics)
#   - profile.py   : display-profile cookie (not a credential)
#   - qr.py        : printable setup links
#
# Cookie lane:
#   snonce : setup proof, 60s, set by /api/setup/start, consumed by /verify
#   sid    : session token, long-lived, set by /api/setup/verify
#   fresh  : freshly-escalated marker, 60s, set next to sid; lets the first
#            /frame load (?fresh=1) prove it comes straight from setup
# -----------------------------------------------------------------------------


import logging
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .audit import AuditLog, build_common
from .config import Settings, settings as default_settings
from .handshake import EscalationController, HandshakeConfig, Reason, normalize_tag
from .profile import PROFILE_COOKIE, Profile, decode_profile, encode_profile
from .qr import make_qr_svg_bytes, setup_url


log = logging.getLogger(__name__)

PROOF_COOKIE = "snonce"
SESSION_COOKIE = "sid"
FRESH_COOKIE = "fresh"

# start / verify rejections -> HTTP status; everything else is 401
_STATUS = {
    Reason.INVALID_CLAIM: 400,
    Reason.FORBIDDEN: 403,
}


def _client(request: Request):
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")


async def _read_tag(request: Request) -> str:
    """
    Tag from ?tag= first, else from a JSON body {"tag": ...}.

    The tap lands as a GET with the query string; the setup page POSTs JSON.
    """
    tag = request.query_params.get("tag")
    if tag:
        return tag
    if request.method != "POST":
        return ""
    try:
        body = await request.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("tag") or "")
    return ""


def create_app(
    settings: Optional[Settings] = None,
    controller: Optional[EscalationController] = None,
    audit: Optional[AuditLog] = None,
) -> FastAPI:
    settings = settings or default_settings
    controller = controller or EscalationController(HandshakeConfig.from_settings(settings))
    audit = audit or AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)
    config = controller.config

    app = FastAPI(title="tapgate", version="0.1.0")
    app.state.controller = controller
    app.state.audit = audit

    def _set_cookie(resp: Response, name: str, value: str, max_age_ms: int) -> None:
        resp.set_cookie(
            name,
            value,
            max_age=max_age_ms // 1000,
            path="/",
            httponly=True,
            secure=settings.COOKIE_SECURE,
            samesite="lax",
        )

    def _json(status: int, content: dict) -> JSONResponse:
        return JSONResponse(status_code=status, content=content, headers={"Cache-Control": "no-store"})

    def _ts() -> int:
        # audit time follows the handshake clock, not the host clock
        return config.clock() // 1000

    # -------------------------------------------------------------------------
    # Setup: tap -> proof
    # -------------------------------------------------------------------------
    @app.api_route("/api/setup/start", methods=["GET", "POST"])
    async def setup_start(request: Request):
        tag = await _read_tag(request)
        ip, ua = _client(request)

        res = controller.start_escalation(tag)
        if not res.ok:
            audit.record(
                build_common(event="proof_denied", tag=res.tag, reason=res.reason.value,
                             request_ip=ip, user_agent=ua, ts=_ts())
            )
            return _json(_STATUS.get(res.reason, 401), {"ok": False, "reason": res.reason.value})

        audit.record(
            build_common(event="proof_issued", tag=res.tag, token=res.proof_token,
                         request_ip=ip, user_agent=ua, ts=_ts())
        )
        resp = _json(200, {"ok": True, "tag": res.tag, "state": res.state.value})
        # overwrites any earlier proof for this browser
        _set_cookie(resp, PROOF_COOKIE, res.proof_token, config.setup_ttl_ms)
        return resp

    # -------------------------------------------------------------------------
    # Setup: proof -> session
    # -------------------------------------------------------------------------
    @app.post("/api/setup/verify")
    async def setup_verify(request: Request):
        tag = await _read_tag(request)
        ip, ua = _client(request)
        proof = request.cookies.get(PROOF_COOKIE)

        res = controller.complete_escalation(proof, tag)
        if not res.ok:
            audit.record(
                build_common(event="escalation_denied", tag=res.tag, reason=res.reason.value,
                             token=proof, request_ip=ip, user_agent=ua, ts=_ts())
            )
            body = {"ok": False, "reason": res.reason.value}
            if res.tag:
                body["tag"] = res.tag
            return _json(_STATUS.get(res.reason, 401), body)

        audit.record(
            build_common(event="session_issued", tag=res.tag, token=res.session_token,
                         request_ip=ip, user_agent=ua, ts=_ts())
        )

        body = {"ok": True, "tag": res.tag, "state": res.state.value}
        char = (request.query_params.get("char") or "").strip()
        if char:
            body["redirect"] = f"/frame?char={quote(char, safe='')}&from=setup&fresh=1"

        resp = _json(200, body)
        _set_cookie(resp, SESSION_COOKIE, res.session_token, config.session_ttl_ms)
        _set_cookie(resp, FRESH_COOKIE, res.fresh_token, config.fresh_ttl_ms)
        # proof has done its job
        resp.delete_cookie(PROOF_COOKIE, path="/", secure=settings.COOKIE_SECURE, httponly=True, samesite="lax")
        return resp

    # -------------------------------------------------------------------------
    # Protected resource gate
    # -------------------------------------------------------------------------
    @app.get("/api/auth/check")
    def auth_check(request: Request, fresh: str = ""):
        """
        Always 200; the frame page reads ok/reason and sends the user back to
        /setup (with the tag) when ok is false.
        """
        res = controller.check_session(
            request.cookies.get(SESSION_COOKIE),
            require_freshness=(fresh == "1"),
            marker=request.cookies.get(FRESH_COOKIE),
        )
        return _json(200, res.model_dump(mode="json", exclude_none=True))

    # -------------------------------------------------------------------------
    # Display profile (character selection)
    # -------------------------------------------------------------------------
    @app.post("/api/claim")
    async def claim(request: Request):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(400, "invalid body")
        if not isinstance(body, dict):
            raise HTTPException(400, "invalid body")
        try:
            profile = Profile(**body)
        except (TypeError, ValidationError):
            raise HTTPException(400, "invalid ip/cara")

        resp = Response(status_code=204)
        resp.set_cookie(
            PROFILE_COOKIE,
            encode_profile(profile),
            max_age=settings.PROFILE_TTL_SECONDS,
            path="/",
            httponly=True,
            secure=settings.COOKIE_SECURE,
            samesite="lax",
        )
        return resp

    @app.get("/api/bootstrap")
    def bootstrap(request: Request):
        profile = decode_profile(request.cookies.get(PROFILE_COOKIE))
        if profile is None:
            return Response(status_code=204)
        return profile.model_dump()

    # -------------------------------------------------------------------------
    # Printable setup link (QR fallback for the NFC sticker)
    # -------------------------------------------------------------------------
    @app.get("/api/setup/link.svg")
    def setup_link_svg(tag: str, char: str = ""):
        clean = normalize_tag(tag)
        if clean is None:
            raise HTTPException(400, "invalid tag")
        if clean not in config.policy:
            raise HTTPException(403, "forbidden")

        svg_bytes = make_qr_svg_bytes(setup_url(settings.ORIGIN, clean, char.strip()))
        return Response(content=svg_bytes, media_type="image/svg+xml")

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    return app


logging.basicConfig(level=default_settings.LOG_LEVEL)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tapgate.main:app", host=default_settings.BIND, port=default_settings.PORT, reload=False)
