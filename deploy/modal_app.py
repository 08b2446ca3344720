import modal

app = modal.App("marketplace-order-sync")

image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.115.0",
        "uvicorn>=0.30.0",
        "pydantic>=2.7",
        "pydantic-settings>=2.3",
        "supabase>=2.5",
        "httpx>=0.27",
    )
    .add_local_python_source("src")
)


@app.function(image=image, secrets=[modal.Secret.from_name("marketplace-order-sync")])
@modal.asgi_app()
def fastapi_app():
    from src.main import app as web_app

    return web_app
