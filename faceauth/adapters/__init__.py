"""
Hardware and model adapters.

Each adapter lives in its own module so that optional backends
(mediapipe, insightface) are only imported when used:

    from faceauth.adapters.opencv_capture import OpenCVCaptureSource
    from faceauth.adapters.mediapipe_detector import MediaPipeFaceDetector
    from faceauth.adapters.arcface_extractor import ArcFaceExtractor
"""
