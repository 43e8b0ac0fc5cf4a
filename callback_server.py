import html
import logging

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from config import Settings
from models import Platform
from oauth_coordinator import CallbackMessageBus

logger = logging.getLogger(__name__)

PLATFORM_COLORS = {
    Platform.LINKEDIN: '#0077b5',
    Platform.INSTAGRAM: '#E4405F',
    Platform.TWITTER: '#000000',
}


def create_callback_app(bus: CallbackMessageBus, settings: Settings) -> FastAPI:
    """Redirect target for every platform; relays the final URL to the waiting linking attempt."""
    app = FastAPI(title="Social Link OAuth Callback")

    @app.get("/")
    async def root():
        return {
            "message": "Social Link OAuth callback server",
            "status": "healthy",
            "listeners": bus.subscriber_count,
        }

    @app.get("/auth/{platform}/callback/")
    async def oauth_callback(platform: str, request: Request):
        try:
            platform_enum = Platform(platform)
        except ValueError:
            return render_error(f"Unsupported platform: {platform}")

        # Never log the query string: it carries the authorization code
        logger.info(f"🔄 OAuth redirect received for {platform_enum.value}")
        # Rebuilt from APP_ORIGIN: behind a TLS-terminating proxy request.url is plain http
        redirect_url = settings.redirect_uri(platform_enum)
        if request.url.query:
            redirect_url = f"{redirect_url}?{request.url.query}"
        delivered = bus.publish(redirect_url)
        if not delivered:
            logger.warning(f"⚠️ No linking attempt is waiting for {platform_enum.value}")
            return render_error("No connection attempt is waiting for this redirect. Please start again.")

        if request.query_params.get('error'):
            return render_error(
                request.query_params.get('error_description') or request.query_params['error']
            )
        return render_success(platform_enum)

    return app


def render_success(platform: Platform):
    color = PLATFORM_COLORS.get(platform, '#667eea')
    name = platform.display_name

    html_content = f"""
    <!DOCTYPE html>
    <html>
        <head>
            <title>{name} Connected!</title>
            <meta charset="UTF-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
            <style>
                body {{
                    font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;
                    display: flex;
                    justify-content: center;
                    align-items: center;
                    height: 100vh;
                    margin: 0;
                    background: linear-gradient(135deg, {color}20 0%, {color}40 100%);
                }}
                .container {{
                    background: white;
                    padding: 50px;
                    border-radius: 15px;
                    text-align: center;
                    max-width: 500px;
                    border-left: 5px solid {color};
                }}
                h1 {{ color: {color}; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div>✅</div>
                <h1>{name} authorization received</h1>
                <p>You can close this window and return to the app.</p>
            </div>
            <script>
                if (window.opener) {{
                    window.opener.postMessage({{ type: 'oauth_redirect', url: window.location.href }}, '*');
                }}
                setTimeout(() => {{
                    window.close();
                }}, 3000);
            </script>
        </body>
    </html>
    """
    return HTMLResponse(content=html_content)


def render_error(error_message: str):
    logger.info(f"🎯 Rendering callback error page: {error_message}")

    html_content = f"""
    <!DOCTYPE html>
    <html>
        <head>
            <title>Connection Error</title>
            <meta charset="UTF-8">
            <style>
                body {{
                    font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;
                    display: flex;
                    justify-content: center;
                    align-items: center;
                    height: 100vh;
                    margin: 0;
                    background: linear-gradient(135deg, #f093fb 0%, #f5576c 100%);
                }}
                .container {{
                    background: white;
                    padding: 50px;
                    border-radius: 15px;
                    text-align: center;
                    max-width: 500px;
                    border-left: 5px solid #ef4444;
                }}
                h1 {{ color: #ef4444; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div>❌</div>
                <h1>Connection Failed</h1>
                <p>{html.escape(error_message)}</p>
                <button onclick="window.close()">Close & Retry</button>
            </div>
        </body>
    </html>
    """
    return HTMLResponse(content=html_content, status_code=400)
