import os
import time
import io
from urllib.parse import urlparse

import requests
import streamlit as st

API_BASE = os.getenv("FLATTEN_SERVICE_API_BASE", os.getenv("API_BASE", "http://localhost:3000")).rstrip("/")


def _reset_state():
    for key in [
        "download_url",
        "time_remaining_url",
        "error",
    ]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    if "upload_key" in st.session_state:
        st.session_state["upload_key"] += 1
    else:
        st.session_state["upload_key"] = 1


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _start_conversion(uploaded_file: io.BytesIO, token: str) -> tuple[str, str] | None:
    try:
        files = {"pdf": (uploaded_file.name, uploaded_file.getvalue(), uploaded_file.type or "application/pdf")}
        resp = requests.post(f"{API_BASE}/convert", files=files, headers=_auth_headers(token), timeout=300)
    except Exception as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code == 403:
        st.session_state["error"] = "The access token was rejected."
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Conversion failed: {resp.status_code} {resp.text}"
        return None
    data = resp.json()
    return str(data["downloadUrl"]), str(data["timeRemainingUrl"])


def _fetch_time_remaining(url: str, token: str) -> float | None:
    """Seconds left for the download, or None once it has expired."""
    try:
        resp = requests.get(url, headers=_auth_headers(token), timeout=30)
    except Exception as e:
        st.session_state["error"] = f"Status check failed: {e}"
        return None
    if resp.status_code == 404:
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Status error: {resp.status_code} {resp.text}"
        return None
    return float(resp.json().get("timeRemaining", 0))


def _is_service_download(url: str) -> bool:
    # Local-store downloads are served by the API and need the bearer token;
    # signed remote URLs work as plain links.
    return urlparse(url).path.startswith("/downloads/")


def _download_artifact(url: str, token: str) -> bytes | None:
    try:
        resp = requests.get(url, headers=_auth_headers(token), timeout=120)
    except Exception as e:
        st.session_state["error"] = f"Download failed: {e}"
        return None
    if resp.status_code == 404:
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Download error: {resp.status_code} {resp.text}"
        return None
    return resp.content


def _format_remaining(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def main() -> None:
    st.set_page_config(page_title="PDF Flatten Service", page_icon="📄", layout="centered")
    st.title("📄 PDF Flatten Service")
    st.caption(f"API base: {API_BASE}")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    token = st.text_input("Access token", type="password")

    # Use a dynamic key so that restarting bumps the key and clears the previous upload
    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload a PDF",
        type=["pdf"],
        key=f"uploader-{st.session_state['upload_key']}"
    )

    if uploaded and token and "download_url" not in st.session_state and st.button("Convert", type="primary"):
        with st.spinner("Uploading and converting..."):
            res = _start_conversion(uploaded, token)
        if res:
            st.session_state["download_url"], st.session_state["time_remaining_url"] = res
            st.toast("Conversion complete", icon="✅")

    if "download_url" in st.session_state:
        st.success("Conversion complete!")
        download_url = st.session_state["download_url"]
        if _is_service_download(download_url):
            data = _download_artifact(download_url, token)
            if data is not None:
                st.download_button(
                    "Download the converted PDF",
                    data=data,
                    file_name=urlparse(download_url).path.rsplit("/", 1)[-1],
                    mime="application/pdf",
                )
        else:
            st.markdown(f"[Download the converted PDF]({download_url})")
        remaining_slot = st.empty()
        while True:
            remaining = _fetch_time_remaining(st.session_state["time_remaining_url"], token)
            if remaining is None:
                remaining_slot.warning("The download link has expired.")
                break
            remaining_slot.info(f"Link expires in {_format_remaining(remaining)}")
            time.sleep(1.0)

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
