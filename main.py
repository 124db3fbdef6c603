import uvicorn

from mail_dispatch.config import load_settings


if __name__ == "__main__":
    settings = load_settings()
    # The server module configures logging and starts the core in the app lifespan
    uvicorn.run("mail_dispatch.server:app", host=str(settings["http_host"]), port=int(settings["http_port"]))
