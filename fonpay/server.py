"""
HTTP listener: health check, ad-network postback, Telegram webhook,
ad-viewer page and referral redirect. Runs the bot in the same process.
"""

import html
import hmac
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from telegram import Update

from .bot import TelegramBot
from .config import Config, setup_logging
from .database import Database
from .errors import NotFound, TransientIO, AlreadySettled, Incomplete
from .notifier import Notifier
from . import sessions

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/telegram/webhook"

AD_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>FonPay Task</title>
  {sdk}
  <style>
    body {{ font-family: sans-serif; text-align: center; padding: 24px; }}
    button {{ font-size: 18px; padding: 12px 24px; }}
  </style>
</head>
<body>
  <h2>🎯 Watch {threshold} ads to earn your reward</h2>
  <p id="progress">Progress: {count}/{threshold}</p>
  <button id="watch" onclick="watchAd()">▶️ Watch Ad</button>
  <script>
    const sessionId = "{session_id}";
    async function refresh() {{
      const res = await fetch("/api/sessions/" + sessionId);
      if (!res.ok) return;
      const data = await res.json();
      document.getElementById("progress").innerText = data.completed
        ? "✅ Task complete! Check the bot for your reward."
        : "Progress: " + data.count + "/" + data.threshold;
      if (data.completed) document.getElementById("watch").disabled = true;
    }}
    function watchAd() {{
      if (typeof {show_fn} !== "function") {{ alert("Ads are not available right now."); return; }}
      {show_fn}({{ ymid: sessionId }}).then(() => setTimeout(refresh, 2000));
    }}
    setInterval(refresh, 5000);
  </script>
</body>
</html>
"""


def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _postback_params(request: Request) -> dict:
    """Merge query string, JSON body and form body into one dict"""
    params = dict(request.query_params)
    if request.method != "POST":
        return params

    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                params.update(body)
        elif "form" in content_type:
            form = await request.form()
            params.update(form)
    except ValueError as e:
        logger.warning("Unreadable postback body: %s", e)
    return params


def create_app(db: Database, application=None, notifier: Notifier = None,
               manage_application: bool = True) -> FastAPI:
    """Build the FastAPI app around a store and (optionally) a telegram Application"""
    if notifier is None and application is not None:
        notifier = Notifier(application.bot)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if application is not None and manage_application:
            await application.initialize()
            await application.start()
            if Config.BASE_URL:
                await application.bot.set_webhook(
                    url=f"{Config.BASE_URL}{WEBHOOK_PATH}",
                    secret_token=Config.WEBHOOK_SECRET or None,
                    allowed_updates=Update.ALL_TYPES
                )
                logger.info("Webhook set to %s%s", Config.BASE_URL, WEBHOOK_PATH)
            else:
                await application.bot.delete_webhook()
                await application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
                logger.info("BASE_URL not set, bot polling started")
        elif application is None:
            logger.warning("BOT_TOKEN not set. Bot will not start.")

        yield

        if application is not None and manage_application:
            if application.updater and application.updater.running:
                await application.updater.stop()
            await application.stop()
            await application.shutdown()
            logger.info("Bot stopped")

    app = FastAPI(title="FonPay Task Earnings Bot", lifespan=lifespan)
    app.state.db = db
    app.state.application = application
    app.state.notifier = notifier

    @app.get("/")
    async def index():
        return {"ok": True, "service": "FonPay Task Earnings Bot"}

    @app.get("/health")
    async def health():
        try:
            db.ping()
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return JSONResponse({"ok": False, "status": "unhealthy", "database": "error"}, status_code=503)
        return {"ok": True, "status": "healthy", "database": "ok"}

    @app.api_route("/postback/monetag", methods=["GET", "POST"])
    async def monetag_postback(request: Request, background_tasks: BackgroundTasks):
        """Record one validated ad view; always acknowledged so the network does not retry-storm"""
        params = await _postback_params(request)

        if Config.POSTBACK_SECRET:
            token = str(params.get("token", ""))
            if not hmac.compare_digest(token, Config.POSTBACK_SECRET):
                logger.warning("Postback with invalid token from %s", request.client.host if request.client else "unknown")
                raise HTTPException(status_code=403, detail="Invalid token")

        session_id = params.get("session_id") or params.get("sessionId") or params.get("ymid")
        event_id = params.get("event_id") or params.get("eventId")
        ad_index = _int_or_none(params.get("ad_index"))

        if not session_id:
            logger.warning("Postback without session id: %s", params)
            return {"ok": True, "recorded": False}

        try:
            count = sessions.record_view(db, str(session_id), ad_index=ad_index,
                                         external_event_id=str(event_id) if event_id else None)
        except NotFound:
            logger.warning("Postback for unknown session %s ignored", session_id)
            return {"ok": True, "recorded": False}
        except TransientIO:
            logger.exception("Postback for session %s could not be stored", session_id)
            return JSONResponse({"ok": False}, status_code=503)

        settled = False
        if count >= Config.REQUIRED_VIEWS:
            try:
                settlement = sessions.settle(db, str(session_id))
                settled = True
            except (AlreadySettled, Incomplete):
                pass
            except TransientIO:
                # The view is stored; settlement can still happen from the bot's Claim button
                logger.exception("Auto-settlement of session %s failed", session_id)
            else:
                if notifier is not None:
                    # Runs after the response has been sent
                    background_tasks.add_task(notifier.notify_settlement, settlement)

        return {"ok": True, "recorded": True, "count": count, "settled": settled}

    @app.post(WEBHOOK_PATH)
    async def telegram_webhook(request: Request):
        if Config.WEBHOOK_SECRET:
            token = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
            if not hmac.compare_digest(token, Config.WEBHOOK_SECRET):
                logger.warning("Webhook call with invalid secret token")
                raise HTTPException(status_code=403, detail="Invalid secret token")

        if application is None:
            logger.error("Bot application not initialized")
            return JSONResponse({"ok": False, "error": "Bot not initialized"}, status_code=503)

        try:
            data = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(data, dict) or "update_id" not in data:
            raise HTTPException(status_code=400, detail="Invalid webhook data")

        update = Update.de_json(data, application.bot)
        await application.update_queue.put(update)
        return {"ok": True}

    @app.get("/api/sessions/{session_id}")
    async def session_status(session_id: str):
        try:
            progress = sessions.session_progress(db, session_id)
        except NotFound:
            raise HTTPException(status_code=404, detail="Not found")
        return {
            "ok": True,
            "session_id": progress.session_id,
            "count": progress.count,
            "threshold": progress.threshold,
            "completed": progress.completed,
        }

    @app.get("/ad/{session_id}", response_class=HTMLResponse)
    async def ad_page(session_id: str):
        try:
            progress = sessions.session_progress(db, session_id)
        except NotFound:
            raise HTTPException(status_code=404, detail="Not found")

        zone = html.escape(Config.MONETAG_ZONE_ID)
        sdk = f"<script src='//libtl.com/sdk.js' data-zone='{zone}' data-sdk='show_{zone}'></script>" if zone else ""
        return HTMLResponse(AD_PAGE.format(
            sdk=sdk,
            show_fn=f"show_{zone}" if zone else "undefined_ad_sdk",
            session_id=html.escape(progress.session_id),
            count=progress.count,
            threshold=progress.threshold,
        ))

    @app.get("/r/{user_id}")
    async def referral_redirect(user_id: int):
        return RedirectResponse(f"https://t.me/{Config.BOT_USERNAME}?start={user_id}")

    return app


def main():
    """Run the HTTP listener and the bot in one process"""
    setup_logging()
    db = Database(Config.DB_PATH)

    application = None
    notifier = None
    if Config.BOT_TOKEN:
        telegram_bot = TelegramBot(db)
        application = telegram_bot.build_application(Config.BOT_TOKEN)
        notifier = telegram_bot.notifier

    app = create_app(db, application, notifier)
    logger.info("Starting HTTP server on port %s ...", Config.PORT)
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT, log_level="info")


if __name__ == "__main__":
    main()
