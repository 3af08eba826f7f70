import glob, sys
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

def analyze_file(path):
    df = pd.read_csv(path, keep_default_na=False)

    total     = len(df)
    succeeded = (df["outcome"] == "SUCCEEDED").sum()
    failed    = (df["outcome"] == "FAILED").sum()
    no_job    = (df["state"] == "NO_JOB").sum()
    fatal     = (df["state"] == "FAILED_FATAL").sum()

    # Percentiles over devices that completed their pipeline
    lat_ok = df.loc[df["state"].isin(["DONE", "NO_JOB"]), "latency_ms"]
    if not lat_ok.empty:
        p50, p95, p99 = lat_ok.quantile([0.5, 0.95, 0.99]).astype(int).tolist()
    else:
        p50 = p95 = p99 = None

    return {
        "file": path, "total": int(total),
        "succeeded": int(succeeded), "failed": int(failed), "no_job": int(no_job), "fatal": int(fatal),
        "p50_ms": p50, "p95_ms": p95, "p99_ms": p99,
    }

def summarize(files):
    return pd.DataFrame([analyze_file(f) for f in files])

def plot(files, summary, out_prefix=""):
    for f in files:
        df = pd.read_csv(f, keep_default_na=False)
        lat_ok = df.loc[df["state"] == "DONE", "latency_ms"]
        if not lat_ok.empty:
            plt.hist(lat_ok, bins=40, alpha=0.6, label=f)
    plt.xlabel("Device pipeline latency (ms)"); plt.ylabel("Devices")
    plt.title("Per-device latency (completed devices)")
    plt.legend(fontsize=8); plt.savefig(f"{out_prefix}latency_histograms.png", bbox_inches="tight"); plt.close()

    ax = summary.copy()
    ax["success_pct"] = (ax["succeeded"] / ax["total"] * 100).round(1)
    ax["failed_pct"] = (ax["failed"] / ax["total"] * 100).round(1)
    ax["fatal_pct"] = (ax["fatal"] / ax["total"] * 100).round(1)
    ax[["file","success_pct","failed_pct","fatal_pct"]].set_index("file").plot.bar(figsize=(10,5))
    plt.ylabel("Percentage (%)"); plt.title("Outcomes per run")
    plt.tight_layout(); plt.savefig(f"{out_prefix}outcomes.png"); plt.close()

def main(argv=None):
    files = sorted(argv if argv else glob.glob("*.csv"))
    files = [f for f in files if not f.endswith("summary_results.csv")]
    print(f"Found {len(files)} CSV files:", *files, sep="\n - ")
    if not files:
        return 1
    summary = summarize(files)
    print("\n=== Summary Results ===")
    print(summary[["file","total","succeeded","failed","no_job","fatal","p50_ms","p95_ms","p99_ms"]])
    summary.to_csv("summary_results.csv", index=False)
    print("\n✅ Wrote summary_results.csv")
    plot(files, summary)
    print("✅ Wrote latency_histograms.png, outcomes.png")
    return 0

if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
