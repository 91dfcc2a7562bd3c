import asyncio

import streamlit as st
from goforno.config import get_diagnostics
from goforno.db import SessionLocal
from goforno.models import SchedulerCheckpoint
from goforno.services.runner import build_tasks, run_task_once
from goforno.ui.theme import load_css

load_css()
st.title("Scheduler 🗓️")

if "user" not in st.session_state:
    st.warning("Please log in first.")
    st.stop()

db = SessionLocal()
try:
    st.subheader("Last runs")
    checkpoints = db.query(SchedulerCheckpoint).order_by(SchedulerCheckpoint.task_name).all()
    if not checkpoints:
        st.caption("No sweep has run yet.")
    for cp in checkpoints:
        summary = cp.last_summary_json or {}
        counts = summary.get("counts", {})
        with st.expander(f"**{cp.task_name}** • last run {cp.last_run_at:%Y-%m-%d %H:%M} UTC" if cp.last_run_at
                         else f"**{cp.task_name}** • never"):
            cols = st.columns(4)
            cols[0].metric("Processed", summary.get("processed", 0))
            cols[1].metric("Generated / Sent", counts.get("generated", 0) + counts.get("sent", 0))
            cols[2].metric("Skipped", counts.get("skipped", 0))
            cols[3].metric("Failed", counts.get("failed", 0))
            failures = summary.get("failures") or []
            if failures:
                st.markdown("**Failures**")
                st.json(failures)

    st.divider()
    st.subheader("Run a sweep now")
    st.caption("Daily tasks still respect their trigger window and once-a-day guard.")
    for task in build_tasks():
        if st.button(f"▶ {task.name}", key=f"btn_run_{task.name}"):
            summary = asyncio.run(run_task_once(task))
            if summary is not None:
                st.success(f"{task.name}: {summary.counts}")
            else:
                st.info(f"{task.name}: nothing to do right now (outside window or already ran).")

    st.divider()
    st.subheader("Diagnostics")
    st.json(get_diagnostics())
finally:
    db.close()
