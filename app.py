"""
APKShield Streamlit UI
A demo interface for the APK scanning API.
"""

from typing import Dict, Any

import requests
import streamlit as st


st.set_page_config(
    page_title="APKShield Demo",
    page_icon="🛡️",
    layout="wide",
)


# ---------- Helpers ----------


def call_scan(base_url: str, file_bytes: bytes, file_name: str, file_type: str) -> Dict[str, Any]:
    """Call APKShield /api/scan-apk with multipart/form-data."""

    endpoint = base_url.rstrip("/") + "/api/scan-apk"
    files = {"apk": (file_name, file_bytes, file_type or "application/vnd.android.package-archive")}

    resp = requests.post(endpoint, files=files, timeout=300)
    if resp.status_code == 429:
        retry_ms = resp.json().get("retryAfter", 1000)
        raise RuntimeError(f"Too many scans. Try again in {retry_ms / 1000:.0f}s.")
    resp.raise_for_status()
    return resp.json()


def render_result(payload: Dict[str, Any]):
    """Render the scan verdict and the analyzer metadata."""
    result = payload.get("result", {})
    metadata = payload.get("metadata", {})

    st.subheader("🔎 Result")

    risk_level = result.get("riskLevel", "unknown")
    risk_colors = {
        "minimal": "🟢",
        "low": "🟢",
        "medium": "🟡",
        "high": "🟠",
        "critical": "🔴",
    }
    risk_icon = risk_colors.get(risk_level, "⚪")

    col1, col2, col3 = st.columns(3)

    with col1:
        st.metric("Risk Level", f"{risk_icon} {risk_level.upper()}")

    with col2:
        st.metric("Fake Banking App", "YES" if result.get("isFake") else "NO")

    with col3:
        st.metric("Confidence", f"{result.get('confidence', 0)}%")

    summary = result.get("summary")
    if summary:
        if result.get("isFake"):
            st.error(summary)
        else:
            st.info(summary)

    recommendations = result.get("recommendations") or []
    if recommendations:
        st.divider()
        st.markdown("### 💡 Recommendations")
        for rec in recommendations:
            st.markdown(f"- {rec}")

    st.divider()

    col_left, col_right = st.columns(2)

    with col_left:
        threats = result.get("threats") or []
        st.markdown("**🚩 Threats**")
        if threats:
            for threat in threats:
                st.write(f"- {threat}")
        else:
            st.write("No threats detected.")

    with col_right:
        basic = metadata.get("basic") or {}
        st.markdown("**📦 Package**")
        st.write(f"- Name: `{basic.get('appName') or 'N/A'}`")
        st.write(f"- Package: `{basic.get('packageName') or 'N/A'}`")
        st.write(f"- Version: `{basic.get('versionName') or 'N/A'}`")
        permissions = basic.get("permissions") or []
        st.write(f"- Permissions: {len(permissions)}")

        ml = metadata.get("ml")
        if ml:
            if ml.get("error"):
                st.caption(f"ML: {ml['error']}")
            else:
                st.caption(f"ML malware probability: {ml.get('malwareProbability', 0):.0%}")

    with st.expander("🔧 Raw JSON response"):
        st.json(payload)


# ---------- Sidebar config ----------


st.sidebar.title("⚙️ Settings")

base_url = st.sidebar.text_input(
    "Backend URL",
    value="http://127.0.0.1:8000",
    help="FastAPI server base URL.",
)

st.sidebar.markdown("---")

if st.sidebar.button("🔌 Check Connection"):
    try:
        resp = requests.get(f"{base_url.rstrip('/')}/api/health", timeout=5)
        if resp.status_code == 200:
            services = resp.json().get("services", {})
            st.sidebar.success("✅ Backend is online!")
            st.sidebar.caption(f"Threat intel: {services.get('threatIntel', 'unknown')}")
        else:
            st.sidebar.error(f"❌ Backend returned {resp.status_code}")
    except Exception as e:
        st.sidebar.error(f"❌ Cannot connect: {e}")


# ---------- Main UI ----------


st.title("🛡️ APKShield")
st.markdown("**Fake Banking App Detector**")
st.markdown("---")

apk_file = st.file_uploader("Upload an APK", type=["apk"])

if st.button("🔍 Scan APK", key="scan_apk", type="primary"):
    if apk_file is None:
        st.warning("Please upload an APK file.")
    else:
        with st.spinner("Scanning... (large APKs may take a minute)"):
            try:
                payload = call_scan(
                    base_url=base_url,
                    file_bytes=apk_file.getvalue(),
                    file_name=apk_file.name,
                    file_type=apk_file.type,
                )
                render_result(payload)
            except requests.exceptions.HTTPError as e:
                body = e.response.json() if e.response.headers.get("content-type", "").startswith("application/json") else {}
                st.error(f"API Error: {e.response.status_code} - {body.get('message') or e.response.text}")
            except Exception as e:
                st.error(f"Error calling backend: {e}")


# --- Footer ---
st.markdown("---")
st.markdown(
    "<div style='text-align: center; color: gray;'>"
    "APKShield v0.1.0 • Fake Banking App Detection"
    "</div>",
    unsafe_allow_html=True,
)
