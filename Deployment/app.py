import os
import io
import uuid
from collections import deque
from flask import Flask, request, jsonify, session, send_file, send_from_directory, Response
from flask_session import Session
from flask_cors import CORS
from werkzeug.utils import secure_filename
from PIL import Image as PILImage, UnidentifiedImageError
from groq import Groq, GroqError

import config_master as config
import utils_chart
import utils_export
import utils_generation
from utils_history import HistoryLog
from utils_notation import (
    AnalysisResult, ToothFinding, apply_corrections, apply_jaw_override, as_flag,
    clean_quadrant_input, findings_from_quadrants, generate_combined_description
)


# App Initialization
app = Flask(__name__)
CORS(app)
app.secret_key = os.getenv("FLASK_SECRET_KEY") or os.urandom(24)

# Configure server-side sessions
app.config["SESSION_PERMANENT"] = False
app.config["SESSION_TYPE"] = "filesystem"
app.config["SESSION_COOKIE_SAMESITE"] = "None"
app.config["SESSION_COOKIE_SECURE"] = True
app.config["SESSION_FILE_DIR"] = config.SESSION_DIR

os.makedirs(app.config["SESSION_FILE_DIR"], exist_ok=True)

Session(app)

#  Groq API Key Rotation
GROQ_API_KEYS = []
i = 1
while True:
    key = os.getenv(f"GROQ_API_KEY_{i}")
    if key:
        GROQ_API_KEYS.append(key)
        i += 1
    else:
        break

if not GROQ_API_KEYS:
    main_key = os.getenv("GROQ_API_KEY")
    if main_key:
        GROQ_API_KEYS.append(main_key)
        print("Loaded 1 GROQ_API_KEY from environment.")
    else:
        print("WARNING: No GROQ_API_KEY environment variables found. Image recognition and text parsing are DISABLED.")

if not GROQ_API_KEYS:
    api_key_queue = deque()
    GROQ_CLIENT = None
else:
    print(f"Loaded {len(GROQ_API_KEYS)} API keys.")
    api_key_queue = deque(GROQ_API_KEYS)
    GROQ_CLIENT = Groq(api_key=api_key_queue[0])

CHART_FONT = utils_chart.load_chart_font()


#  Groq Helper Functions
def get_new_groq_client():
    """Rotates the global API key queue and returns a new client."""
    global GROQ_CLIENT, api_key_queue

    if not api_key_queue or len(api_key_queue) == 0:
        print("No API keys available.")
        return False

    api_key_queue.rotate(-1)
    new_key = api_key_queue[0]

    if len(GROQ_API_KEYS) > 1 and new_key == GROQ_API_KEYS[0]:
        print("All API keys have been tried and are likely exhausted.")

    print(f"\nRotating to new API key: ...{new_key[-4:]}")
    GROQ_CLIENT = Groq(api_key=new_key)
    return True

def _is_key_exhausted(e: GroqError) -> bool:
    status = getattr(e, 'status_code', None)
    message = str(getattr(e, 'message', e)).lower()
    return (status == 429 and "tpd" in message) or (status == 400 and "organization_restricted" in message)

def call_llm(func, *args):
    """
    Runs a utils_generation call against the current client, rotating the key
    once on quota/restriction errors. Returns (value, error_text).
    """
    if not GROQ_CLIENT:
        return None, "ERROR: Groq API client is not initialized."

    try:
        return func(GROQ_CLIENT, *args), None
    except GroqError as e:
        if _is_key_exhausted(e) and len(GROQ_API_KEYS) > 1:
            print(f"API key error: {getattr(e, 'message', e)}. Rotating key.")
            if not get_new_groq_client():
                return None, "ERROR: All API keys have hit their daily token limits or have been restricted."
            try:
                return func(GROQ_CLIENT, *args), None
            except Exception as retry_e:
                return None, f"ERROR: API call failed on retry: {str(retry_e)}"
        return None, f"ERROR: An API error occurred: {str(e)}"
    except utils_generation.LLMOutputError as e:
        return None, f"ERROR: Unreadable model output: {str(e)}"


#  Session Helpers
def _session_images() -> dict:
    return session.setdefault('images', {})

def _session_history() -> HistoryLog:
    return HistoryLog.from_list(session.get('history', []))

def _store_history(history: HistoryLog):
    session['history'] = history.to_list()
    session.modified = True

def _json_object():
    """The request's JSON body when it is an object, otherwise None."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None

def _quadrants_from_request(data: dict) -> dict:
    return {code: clean_quadrant_input(str(data.get(code) or "")) for code in ('UR', 'UL', 'LR', 'LL')}

def _image_payload(job_id: str, entry: dict) -> dict:
    result = AnalysisResult.from_dict(entry['result'])
    if not entry.get('is_corrected'):
        result = apply_jaw_override(result, entry.get('is_lower', False))
    return {
        "job_id": job_id,
        "image_name": entry['image_name'],
        "is_lower": entry.get('is_lower', False),
        "is_corrected": entry.get('is_corrected', False),
        "result": result.to_dict(),
    }


# CHART ROUTES
@app.route('/health')
def health():
    return jsonify({"status": "ok", "llm": GROQ_CLIENT is not None})

@app.route('/api/chart', methods=['POST'])
def chart():
    """Sorted quadrant strings, layout geometry, description and export name."""
    data = _json_object()
    if data is None:
        return jsonify({"error": "Request must be a JSON object"}), 400

    quadrants = _quadrants_from_request(data)
    geometry = utils_chart.build_chart_geometry(quadrants, utils_chart.pil_measurer(CHART_FONT))
    return jsonify({
        "quadrants": utils_chart.sorted_quadrants(quadrants),
        "geometry": geometry.to_dict(),
        "description": generate_combined_description(findings_from_quadrants(quadrants)),
        "filename": utils_chart.chart_filename(quadrants),
    })

@app.route('/api/chart.png', methods=['POST'])
def chart_png():
    """Renders the chart and sends it as a PNG named after its description."""
    data = _json_object()
    if data is None:
        return jsonify({"error": "Request must be a JSON object"}), 400

    quadrants = _quadrants_from_request(data)
    png = utils_chart.chart_png_bytes(quadrants, CHART_FONT)
    return send_file(
        io.BytesIO(png), mimetype='image/png',
        as_attachment=True, download_name=utils_chart.chart_filename(quadrants)
    )

@app.route('/api/chart/save', methods=['POST'])
def chart_save():
    """Writes the chart PNG to the results folder and returns its URL."""
    data = _json_object()
    if data is None:
        return jsonify({"error": "Request must be a JSON object"}), 400

    quadrants = _quadrants_from_request(data)
    path = utils_chart.save_chart(quadrants, config.RESULTS_DIR, CHART_FONT)
    filename = os.path.basename(path)
    print(f"Saved chart to {path}")
    return jsonify({"filename": filename, "url": f"/static/results/{filename}"})

@app.route('/static/results/<path:filename>')
def serve_result(filename):
    return send_from_directory(config.RESULTS_DIR, filename)

@app.route('/api/chart/parse', methods=['POST'])
def chart_parse():
    """Free-text description -> four sorted quadrant strings, via the LLM."""
    data = _json_object()
    if data is None:
        return jsonify({"error": "Request must be a JSON object"}), 400
    description = str(data.get('description') or '').strip()
    if not description:
        return jsonify({"error": "Request must contain a non-empty 'description'"}), 400

    print("Parsing chart description via Groq...")
    quadrants, error = call_llm(utils_generation.parse_description_to_chart, description)
    if error:
        print(f"ERROR parsing description: {error}")
        return jsonify({"error": f"解析失败，请检查描述格式或网络连接。 {error}"}), 502
    return jsonify({"quadrants": quadrants})

@app.route('/api/describe', methods=['POST'])
def describe():
    """Combined description for a flat list of findings."""
    data = _json_object()
    if data is None:
        return jsonify({"error": "Request must be a JSON object"}), 400
    raw_findings = data.get('findings')
    if not isinstance(raw_findings, list):
        return jsonify({"error": "Request must contain a 'findings' list"}), 400

    findings = [ToothFinding.from_dict(f) for f in raw_findings if isinstance(f, dict)]
    return jsonify({
        "findings": [f.to_dict() for f in findings],
        "combinedDescription": generate_combined_description(findings),
    })


# RECOGNITION ROUTES
@app.route('/api/analyze', methods=['POST'])
def analyze_image():
    """
    Runs Palmer recognition on an uploaded chart image and stores the result
    in the session under a new job_id.
    """
    if 'image' not in request.files:
        return jsonify({"error": "No image file provided."}), 400

    image_file = request.files['image']
    if not image_file or image_file.filename == '':
        return jsonify({"error": "No image selected."}), 400

    mime_type = image_file.mimetype or 'image/png'
    if mime_type not in config.ALLOWED_IMAGE_TYPES:
        return jsonify({"error": f"Unsupported image type: {mime_type}"}), 400

    # Save local temporary copy of uploaded image
    filename = secure_filename(image_file.filename) or 'upload'
    job_id = str(uuid.uuid4())
    image_path = os.path.join(config.UPLOADS_DIR, f"{job_id}_{filename}")
    image_file.save(image_path)

    try:
        with PILImage.open(image_path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError) as e:
        return jsonify({"error": f"Failed to read image: {e}"}), 400

    with open(image_path, 'rb') as f:
        image_bytes = f.read()

    print(f"Running Palmer recognition on {filename}...")
    result, error = call_llm(utils_generation.analyze_dental_image, image_bytes, mime_type)
    if error:
        print(f"ERROR analyzing {filename}: {error}")
        return jsonify({"error": f"Failed to analyze image: {error}"}), 502

    images = _session_images()
    images[job_id] = {
        "image_name": image_file.filename,
        "image_path": image_path,
        "original": result.to_dict(),
        "result": result.to_dict(),
        "is_lower": False,
        "is_corrected": False,
    }
    session.modified = True

    return jsonify(_image_payload(job_id, images[job_id]))

@app.route('/api/images')
def list_images():
    images = session.get('images', {})
    return jsonify({"images": [_image_payload(job_id, entry) for job_id, entry in images.items()]})

@app.route('/api/images/<job_id>', methods=['DELETE'])
def remove_image(job_id):
    images = session.get('images', {})
    if images.pop(job_id, None) is None:
        return jsonify({"error": "Unknown job_id."}), 404
    session.modified = True
    return jsonify({"success": True})

@app.route('/api/jaw', methods=['POST'])
def toggle_jaw():
    """Marks findings recorded without a horizontal line as upper (default) or lower jaw."""
    data = _json_object()
    if data is None:
        return jsonify({"error": "Request must be a JSON object"}), 400
    job_id = data.get('job_id')
    entry = session.get('images', {}).get(job_id)
    if not entry:
        return jsonify({"error": "Invalid job_id or session expired. Please re-analyze your image."}), 404

    entry['is_lower'] = as_flag(data.get('is_lower', False))
    session.modified = True
    return jsonify(_image_payload(job_id, entry))

@app.route('/api/correct', methods=['POST'])
def correct_result():
    """Saves the user's edited findings and logs the correction to the session history."""
    data = _json_object()
    if data is None:
        return jsonify({"error": "Request must be a JSON object"}), 400
    job_id = data.get('job_id')
    raw_findings = data.get('findings')
    entry = session.get('images', {}).get(job_id)
    if not entry:
        return jsonify({"error": "Invalid job_id or session expired. Please re-analyze your image."}), 404
    if not isinstance(raw_findings, list):
        return jsonify({"error": "Request must contain a 'findings' list"}), 400

    findings = [
        ToothFinding.create(str(f.get('toothNumber', '')).strip().upper(), f.get('quadrant'))
        for f in raw_findings if isinstance(f, dict)
    ]
    previous = AnalysisResult.from_dict(entry['result'])
    corrected = apply_corrections(previous, findings)

    history = _session_history()
    history.add(entry['image_name'], previous, corrected)
    _store_history(history)

    entry['result'] = corrected.to_dict()
    entry['is_corrected'] = True
    session.modified = True
    return jsonify(_image_payload(job_id, entry))


# HISTORY ROUTES
@app.route('/api/history', methods=['GET'])
def get_history():
    return jsonify({"history": _session_history().to_list()})

@app.route('/api/history', methods=['DELETE'])
def clear_history():
    session.pop('history', None)
    return jsonify({"success": True})

@app.route('/api/history/export')
def export_history():
    history = _session_history()
    return Response(
        history.export_json(),
        mimetype="application/json",
        headers={"Content-disposition": f"attachment; filename={HistoryLog.export_filename()}"}
    )


# EXPORT ROUTES
@app.route('/api/export')
def export_results():
    """PDF of every analysed image in the session with its composed description."""
    images = session.get('images', {})
    if not images:
        return jsonify({"error": "No analysed images in session."}), 404

    rows = []
    for entry in images.values():
        result = AnalysisResult.from_dict(entry['result'])
        rows.append({
            "image_path": entry.get('image_path'),
            "image_name": entry['image_name'],
            "description": utils_export.export_description(
                result, entry.get('is_corrected', False), entry.get('is_lower', False)
            ),
        })

    pdf_path = os.path.join(config.RESULTS_DIR, f"{uuid.uuid4()}_results.pdf")
    print(f"Exporting {len(rows)} results to PDF...")
    if not utils_export.create_results_pdf(rows, pdf_path):
        return jsonify({"error": "Failed to create export document."}), 500

    return send_file(
        pdf_path, mimetype='application/pdf',
        as_attachment=True, download_name=utils_export.export_filename()
    )


# APP RUNNER

if __name__ == '__main__':
    if not GROQ_CLIENT:
        print("--- Groq client not configured: only manual charting is available. ---")
    print("Flask server starting...")
    port = int(os.environ.get("PORT", 7860))
    print(f"Open http://127.0.0.1:{port} in your browser.")
    app.run(host="0.0.0.0", port=port, debug=True)
