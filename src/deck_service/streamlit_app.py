import io
import os
import re
import time

import requests
import streamlit as st
import streamlit.components.v1 as components

API_BASE = os.getenv("DECK_SERVICE_API_BASE", os.getenv("API_BASE", "http://localhost:3001")).rstrip("/")
REQUEST_TIMEOUT = float(os.getenv("DECK_SERVICE_UI_TIMEOUT", "120"))
VIEWER_HEIGHT = int(os.getenv("DECK_SERVICE_UI_VIEWER_HEIGHT", "640"))

# Page objects, not the /Pages tree nodes
_PAGE_OBJECT = re.compile(rb"/Type\s*/Page(?![A-Za-z])")


def _reset_state():
    for key in ["pdf_url", "job_id", "page", "pdf_bytes", "error", "details"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    st.session_state["upload_key"] = st.session_state.get("upload_key", 0) + 1


def _convert(uploaded_file: io.BytesIO) -> dict[str, object] | None:
    files = {
        "presentationFile": (
            uploaded_file.name,
            uploaded_file.getvalue(),
            uploaded_file.type or "application/octet-stream",
        )
    }
    try:
        resp = requests.post(f"{API_BASE}/convert-presentation", files=files, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    try:
        data = resp.json()
    except ValueError:
        st.session_state["error"] = f"Conversion failed: {resp.status_code} {resp.text}"
        return None
    if resp.status_code != 200:
        err = data.get("error") or {}
        st.session_state["error"] = f"Conversion failed ({resp.status_code}): {err.get('message', resp.text)}"
        st.session_state["details"] = err.get("details")
        return None
    return data


def _download_pdf(pdf_url: str) -> bytes | None:
    max_attempts = 3
    backoff = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            resp = requests.get(f"{API_BASE}{pdf_url}", timeout=60)
        except requests.RequestException as e:
            if attempt < max_attempts:
                time.sleep(backoff)
                backoff *= 1.5
                continue
            st.session_state["error"] = f"Download failed: {e}"
            return None
        if resp.status_code == 200:
            return resp.content
        # Artifacts are pruned after a while; a 404 will not heal itself
        if resp.status_code >= 500 and attempt < max_attempts:
            time.sleep(backoff)
            backoff *= 1.5
            continue
        st.session_state["error"] = f"Download error: {resp.status_code}"
        return None
    return None


def _page_count(pdf_bytes: bytes | None) -> int | None:
    """Count page objects in a PDF; None when it cannot be told."""
    if not pdf_bytes:
        return None
    return len(_PAGE_OBJECT.findall(pdf_bytes)) or None


def _clamp_page(page: int, page_count: int | None) -> int:
    page = max(1, page)
    if page_count is not None:
        page = min(page, page_count)
    return page


def _viewer(pdf_url: str, page_count: int | None) -> None:
    page = _clamp_page(int(st.session_state.get("page", 1)), page_count)
    prev_col, page_col, next_col, full_col = st.columns([1, 2, 1, 2])
    with prev_col:
        if st.button("◀ Prev", disabled=page <= 1):
            st.session_state["page"] = page - 1
            st.rerun()
    with page_col:
        chosen = st.number_input(
            "Page", min_value=1, max_value=page_count, value=page, step=1, label_visibility="collapsed"
        )
        if chosen != page:
            st.session_state["page"] = int(chosen)
            st.rerun()
    with next_col:
        at_end = page_count is not None and page >= page_count
        if st.button("Next ▶", disabled=at_end):
            st.session_state["page"] = page + 1
            st.rerun()
        if page_count is not None:
            st.caption(f"of {page_count}")
    with full_col:
        st.link_button("Open full screen", f"{API_BASE}{pdf_url}#page={page}")
    # The browser's PDF viewer honours the #page fragment
    components.iframe(f"{API_BASE}{pdf_url}#page={page}", height=VIEWER_HEIGHT, scrolling=True)


def main() -> None:
    st.set_page_config(page_title="Presentation Viewer", page_icon="📊", layout="centered")
    st.title("📊 Presentation Viewer")
    st.caption(f"API base: {API_BASE}")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload a presentation (.ppt, .pptx)",
        type=["ppt", "pptx"],  # type: ignore[arg-type]
        key=f"uploader-{st.session_state['upload_key']}",
    )

    if uploaded and "pdf_url" not in st.session_state and st.button("Convert", type="primary"):
        st.session_state.pop("error", None)
        st.session_state.pop("details", None)
        with st.spinner("Uploading and converting..."):
            data = _convert(uploaded)
        if data:
            st.session_state["pdf_url"] = str(data.get("pdfUrl"))
            st.session_state["job_id"] = str(data.get("jobId"))
            st.session_state["page"] = 1
            st.toast("Conversion complete", icon="✅")

    if pdf_url := st.session_state.get("pdf_url"):
        if "pdf_bytes" not in st.session_state:
            st.session_state["pdf_bytes"] = _download_pdf(pdf_url)
        _viewer(pdf_url, _page_count(st.session_state.get("pdf_bytes")))
        if st.session_state.get("pdf_bytes"):
            base = os.path.splitext(uploaded.name)[0] if uploaded else "presentation"
            st.download_button(
                label="Download PDF",
                data=st.session_state["pdf_bytes"],
                file_name=f"{base}.pdf",
                mime="application/pdf",
            )

    if err := st.session_state.get("error"):
        st.error(err)
        if details := st.session_state.get("details"):
            with st.expander("Converter diagnostics"):
                st.code(details)


if __name__ == "__main__":
    main()
