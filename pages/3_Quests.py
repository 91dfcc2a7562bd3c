import asyncio

import streamlit as st
from goforno.db import SessionLocal
from goforno.errors import EngineError
from goforno.models import Challenge, QuestInstance, QuestTemplate, QUEST_ACTIVE, QUEST_COMPLETED, QUEST_QUEUED
from goforno.services.badges import classify_batch
from goforno.services.challenge_day import challenge_day, difficulty_for_day
from goforno.services.challenge_scheduler import enroll_challenge
from goforno.services.leaderboard import PERIOD_LABELS, PERIODS, leaderboard
from goforno.clock import utcnow
from goforno.services.progress import queue_quest, record_action, relevant_count, start_quest
from goforno.services.quest_generator import CATEGORIES
from goforno.ui.theme import badge_row, load_css

load_css()

if "user" not in st.session_state:
    st.warning("Please log in first.")
    st.stop()

st.title("Quests 🎯")

db = SessionLocal()
try:
    user_id = st.session_state.user["id"]
    now = utcnow()

    # ------------------------------------------------------------
    # 100 Day Challenges
    # ------------------------------------------------------------
    st.subheader("100 Day Challenges")
    challenges = db.query(Challenge).filter(Challenge.user_id == user_id, Challenge.is_active.is_(True)).all()
    for c in challenges:
        day = challenge_day(c.start_date, now)
        st.markdown(f"**{c.category}** • Day {day}/100 ({difficulty_for_day(day)}) • {c.completed_days or 0} days done")
    with st.form("enroll_form"):
        category = st.selectbox("Category", CATEGORIES)
        if st.form_submit_button("Start a 100 Day Challenge"):
            try:
                enroll_challenge(db, user_id, category)
                st.success("Challenge started! Your first quest arrives with the next daily run.")
            except EngineError as e:
                st.error(str(e))

    st.divider()

    # ------------------------------------------------------------
    # Active + queued quests
    # ------------------------------------------------------------
    instances = db.query(QuestInstance).filter(QuestInstance.user_id == user_id).order_by(
        QuestInstance.id.desc()
    ).all()
    active = [i for i in instances if i.status == QUEST_ACTIVE]
    queued = [i for i in instances if i.status == QUEST_QUEUED]
    completed = [i for i in instances if i.status == QUEST_COMPLETED]

    st.subheader(f"Active ({len(active)})")
    for inst in active:
        q = inst.quest
        st.markdown(f"**{q.title}**: {q.description}")
        st.progress(min(1.0, relevant_count(inst) / max(1, q.goal_count)),
                    text=f"{relevant_count(inst)}/{q.goal_count} ({q.goal_type})")
        cols = st.columns(3)
        for col, action, label in zip(cols, ("NO", "YES", "ACTION"), ("❌ No", "✅ Yes", "⭐ Action")):
            with col:
                if st.button(label, key=f"btn_{action}_{inst.id}"):
                    try:
                        result = asyncio.run(record_action(db, inst.id, action, user_id=user_id))
                        if result.completed:
                            st.balloons()
                        st.rerun()
                    except EngineError as e:
                        st.error(str(e))

    held = {i.quest_id for i in instances}
    available = db.query(QuestTemplate).filter(~QuestTemplate.id.in_(held)).order_by(
        QuestTemplate.id.desc()
    ).limit(20).all()
    if available:
        with st.form("queue_form"):
            pick = st.selectbox("Add a quest", available, format_func=lambda q: f"{q.title} ({q.difficulty})")
            if st.form_submit_button("Queue it"):
                try:
                    queue_quest(db, user_id, pick.id)
                    st.rerun()
                except EngineError as e:
                    st.error(str(e))

    if queued:
        st.subheader(f"Queued ({len(queued)})")
        for inst in queued:
            cols = st.columns([6, 1])
            cols[0].markdown(f"**{inst.quest.title}** ({inst.quest.difficulty})")
            with cols[1]:
                if st.button("Start", key=f"btn_start_{inst.id}"):
                    try:
                        start_quest(db, inst.id, user_id=user_id)
                        st.rerun()
                    except EngineError as e:
                        st.error(str(e))

    st.divider()
    st.subheader(f"Completed ({len(completed)})")
    badges = classify_batch(db, [i.id for i in completed])
    for inst in completed:
        st.markdown(f"**{inst.quest.title}** • {badge_row(badges.get(inst.id, {}))}")

    st.divider()
    st.subheader("Leaderboard")
    cols = st.columns(len(PERIODS))
    for col, period in zip(cols, PERIODS):
        rows = leaderboard(db, period, now=now)
        mine = next(((rank, done) for rank, uid, done in rows if uid == user_id), None)
        if mine:
            col.metric(PERIOD_LABELS[period].title(), f"#{mine[0]} of {len(rows)}", f"{mine[1]} completed")
        else:
            col.metric(PERIOD_LABELS[period].title(), "-")
finally:
    db.close()
