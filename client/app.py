import json
from typing import Any, Dict, List

import httpx
import streamlit as st

from merchantops.logs import setup_logging

LOGGER = setup_logging("merchantops.console", "client.log")

OUTCOME_NOTES = {
    "limit_exceeded": "Stopped at the tool call limit; the answer may be incomplete.",
    "model_unavailable": "The model was unavailable; showing what was gathered so far.",
}


def post_chat(api_url: str, message: str, history: List[Dict[str, str]], session_id: str) -> Dict[str, Any]:
    """Send one message to the orchestrator API and return the decoded response."""
    LOGGER.info("POST %s session_id=%s history=%d", api_url, session_id, len(history))
    body: Dict[str, Any] = {"message": message, "conversationHistory": history}
    if session_id:
        body["sessionId"] = session_id
    response = httpx.post(api_url, json=body, timeout=120)
    data = response.json()
    if response.status_code >= 400 or not data.get("success"):
        raise RuntimeError(data.get("error") or f"HTTP {response.status_code}")
    LOGGER.info(
        "Chat done outcome=%s iterations=%s tool_calls=%d",
        data.get("outcome"),
        data.get("iterations"),
        len(data.get("toolCalls") or []),
    )
    return data


def fetch_status(api_url: str) -> Dict[str, Any]:
    try:
        return httpx.get(api_url, timeout=10).json()
    except (httpx.HTTPError, json.JSONDecodeError) as e:
        LOGGER.error("Status check failed: %s", e)
        return {"status": "error", "mcp": {"connected": False, "error": str(e)}}


def render_tool_calls(tool_calls: List[Dict[str, Any]]) -> None:
    for idx, call in enumerate(tool_calls, 1):
        result = call.get("result")
        failed = isinstance(result, dict) and result.get("error") is True
        label = f"{idx}. {call.get('name')} ({call.get('durationMs', 0):.0f} ms){' - failed' if failed else ''}"
        with st.expander(label):
            st.caption("Input")
            st.json(call.get("input") or {})
            st.caption("Result")
            st.json(result if result is not None else {})


st.set_page_config(page_title="Merchant Operations", page_icon="🛍️", layout="centered")

st.title("Merchant Operations Assistant")

with st.sidebar:
    st.subheader("Connection")
    api_url = st.text_input("Chat API URL", value="http://localhost:8000/api/chat")
    session_id = st.text_input("Session ID", value=st.session_state.get("session_id", "console-demo"))
    st.session_state["session_id"] = session_id
    if st.button("Check tool host"):
        status = fetch_status(api_url)
        mcp = status.get("mcp") or {}
        if status.get("status") == "ok":
            st.success(f"Connected: {mcp.get('toolCount', 0)} tools ({', '.join(mcp.get('tools') or [])})")
        else:
            st.error(f"Unavailable: {mcp.get('error', 'unknown error')}")
    st.markdown("---")
    if st.button("Clear chat"):
        st.session_state["messages"] = []

if "messages" not in st.session_state:
    st.session_state["messages"] = []

for m in st.session_state["messages"]:
    with st.chat_message(m["role"]):
        st.markdown(m["content"])
        if m.get("toolCalls"):
            render_tool_calls(m["toolCalls"])

prompt = st.chat_input("Ask about a customer, an order or a refund…")
if prompt:
    history = [{"role": m["role"], "content": m["content"]} for m in st.session_state["messages"]]
    st.session_state["messages"].append({"role": "user", "content": prompt})
    with st.chat_message("user"):
        st.markdown(prompt)

    tool_calls: List[Dict[str, Any]] = []
    with st.chat_message("assistant"):
        try:
            with st.spinner("Working…"):
                data = post_chat(api_url, prompt, history, session_id)
            answer = data.get("message") or ""
            tool_calls = data.get("toolCalls") or []
            st.markdown(answer)
            note = OUTCOME_NOTES.get(data.get("outcome", ""))
            if note:
                st.warning(note)
            render_tool_calls(tool_calls)
        except (httpx.HTTPError, RuntimeError, json.JSONDecodeError) as e:
            answer = f"Error: {e}"
            st.error(answer)

    st.session_state["messages"].append({"role": "assistant", "content": answer, "toolCalls": tool_calls})
