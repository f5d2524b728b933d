import uvicorn

from origin_mask.vars import PORT


def main() -> None:
    # TLS is terminated in front of the proxy
    uvicorn.run("origin_mask.server:app", host="0.0.0.0", port=PORT, log_level="info")


if __name__ == "__main__":
    main()
