"""
Medhira - Consultation Transcription and Summarization Service

FastAPI service that turns recorded doctor-patient consultations into
structured medical summaries via speech-to-text and an LLM, with canned
fallbacks whenever a provider is unavailable.
"""

__version__ = "1.0.0"
__author__ = "medhira"
