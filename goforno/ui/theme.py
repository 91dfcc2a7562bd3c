import streamlit as st

BADGE_ICONS = {"silver": "🥈", "gold": "🥇", "bronze": "🥉", "blue": "🔵"}


def load_css():
    try:
        with open("assets/theme.css") as f:
            st.markdown(f"<style>{f.read()}</style>", unsafe_allow_html=True)
    except FileNotFoundError:
        pass


def badge_row(badges: dict) -> str:
    earned = [BADGE_ICONS[name] for name in ("gold", "silver", "bronze", "blue") if badges.get(name)]
    return " ".join(earned) if earned else "-"
