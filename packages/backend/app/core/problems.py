from fastapi.responses import JSONResponse


PROBLEM_TYPE_BASE = "https://passwall.io/errors/"


def problem_type(slug: str) -> str:
    return f"{PROBLEM_TYPE_BASE}{slug}"


def problem_response(status: int, title: str, detail: str, slug: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        media_type="application/problem+json",
        content={
            "type": problem_type(slug) if slug else "about:blank",
            "title": title,
            "status": status,
            "detail": detail,
        },
    )
