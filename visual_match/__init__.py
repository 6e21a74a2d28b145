"""
visual_match — Cross-case visual matching for lost & found reports.

Fingerprints every uploaded photo (perceptual hashes, dominant colors,
OCR text, labels, embedding), compares new fingerprints against existing
cases with a multi-signal scorer, and learns the signal weights from the
confirmations and rejections of case owners.

Modules:
    service        MatchingService facade
    fingerprint    Fingerprint builder
    extractors     Pluggable per-signal extractors
    preprocessing  Image decoding, center patch, quality estimate
    hashing        Perceptual / average / difference hash triplet
    colors         Dominant-color fingerprint and histogram
    ocr_text       OCR tokens and identifiers
    scoring        Pairwise multi-signal scoring
    weights        Versioned weight profiles and their cache
    index_builder  FAISS k-means candidate buckets
    engine         Cascade search
    lifecycle      Match review state machine
    feedback       Feedback validation and snapshots
    tuning         Weight retraining from feedback
    repository     Persistence (SQLAlchemy)
    models         ORM rows
    db             Engine and session factory
    features       Fingerprint and signal records
    config         Environment configuration and thresholds
    errors         Exception types
"""

__version__ = "1.0.0"
